"""The SelfNodeRemediationTemplate resource and its default instances."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from noderemedy.meta import ObjectMeta
from noderemedy.remediation import (
    DEFAULT_REMEDIATION_STRATEGY,
    SelfNodeRemediationSpec,
    validate_strategy,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "self-node-remediation-automatic-strategy-template"
DEFAULT_TEMPLATE_LABEL = "remediation.medik8s.io/default-template"

_CHECKED_OPERATIONS = frozenset({"create", "update"})


@dataclass
class SelfNodeRemediationTemplate:
    """A template from which remediation resources are created."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    template_spec: SelfNodeRemediationSpec = field(default_factory=SelfNodeRemediationSpec)

    def _admit(self, operation: str) -> None:
        """Run the checks that apply to an admission operation."""
        logger.info("validate %s name=%s", operation, self.metadata.name)
        if operation in _CHECKED_OPERATIONS:
            validate_strategy(self.template_spec)

    def validate_create(self) -> None:
        self._admit("create")

    def validate_update(self, old: SelfNodeRemediationTemplate) -> None:
        self._admit("update")

    def validate_delete(self) -> None:
        """Deletion is always admitted."""
        self._admit("delete")


def new_remediation_templates() -> list[SelfNodeRemediationTemplate]:
    """The templates installed by default."""
    return [
        SelfNodeRemediationTemplate(
            metadata=ObjectMeta(
                name=DEFAULT_TEMPLATE_NAME,
                labels={DEFAULT_TEMPLATE_LABEL: "true"},
            ),
            template_spec=SelfNodeRemediationSpec(
                remediation_strategy=DEFAULT_REMEDIATION_STRATEGY
            ),
        )
    ]