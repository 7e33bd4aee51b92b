"""The SelfNodeRemediation resource and its admission validation."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from noderemedy import features
from noderemedy.meta import Condition, ObjectMeta, ValidationError

logger = logging.getLogger(__name__)

KIND = "SelfNodeRemediation"
PROCESSING_CONDITION_TYPE = "Processing"
SUCCEEDED_CONDITION_TYPE = "Succeeded"

_CHECKED_OPERATIONS = frozenset({"create", "update"})


class RemediationStrategy(str, Enum):
    AUTOMATIC = "Automatic"
    RESOURCE_DELETION = "ResourceDeletion"
    OUT_OF_SERVICE_TAINT = "OutOfServiceTaint"


DEFAULT_REMEDIATION_STRATEGY = RemediationStrategy.AUTOMATIC


@dataclass
class SelfNodeRemediationSpec:
    remediation_strategy: Union[RemediationStrategy, str] = DEFAULT_REMEDIATION_STRATEGY


@dataclass
class SelfNodeRemediationStatus:
    time_assumed_rebooted: Optional[dt.datetime] = None
    phase: Optional[str] = None
    last_error: str = ""
    conditions: list[Condition] = field(default_factory=list)


def validate_strategy(spec: SelfNodeRemediationSpec) -> None:
    """Reject the out-of-service strategy where the cluster does not support it."""
    if (
        spec.remediation_strategy == RemediationStrategy.OUT_OF_SERVICE_TAINT
        and not features.gates.out_of_service_taint_supported
    ):
        raise ValidationError(
            f"{RemediationStrategy.OUT_OF_SERVICE_TAINT.value} remediation strategy is not "
            "supported at kubernetes version lower than 1.26, please use a different "
            "remediation strategy"
        )


@dataclass
class SelfNodeRemediation:
    """A request to remediate one unhealthy node."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SelfNodeRemediationSpec = field(default_factory=SelfNodeRemediationSpec)
    status: SelfNodeRemediationStatus = field(default_factory=SelfNodeRemediationStatus)

    def _admit(self, operation: str) -> None:
        """Run the checks that apply to an admission operation."""
        logger.info("validate %s name=%s", operation, self.metadata.name)
        if operation in _CHECKED_OPERATIONS:
            validate_strategy(self.spec)

    def validate_create(self) -> None:
        self._admit("create")

    def validate_update(self, old: SelfNodeRemediation) -> None:
        self._admit("update")

    def validate_delete(self) -> None:
        """Deletion is always admitted."""
        self._admit("delete")