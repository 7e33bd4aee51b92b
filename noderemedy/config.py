"""The SelfNodeRemediationConfig resource and its admission validation."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from noderemedy.meta import (
    ObjectMeta,
    TaintEffect,
    Toleration,
    TolerationOperator,
    ValidationError,
    aggregate_errors,
    format_duration,
)

logger = logging.getLogger(__name__)

KIND = "SelfNodeRemediationConfig"
CONFIG_CR_NAME = "self-node-remediation-config"
DEFAULT_WATCHDOG_PATH = "/dev/watchdog"
DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT = 180
DEFAULT_IS_SOFTWARE_REBOOT_ENABLED = True
DEFAULT_MAX_API_ERROR_THRESHOLD = 3
DEFAULT_HOST_PORT = 30001

# Field names as they appear in validation messages.
PEER_API_SERVER_TIMEOUT = "PeerApiServerTimeout"
API_SERVER_TIMEOUT = "ApiServerTimeout"
PEER_DIAL_TIMEOUT = "PeerDialTimeout"
PEER_REQUEST_TIMEOUT = "PeerRequestTimeout"
API_CHECK_INTERVAL = "ApiCheckInterval"
PEER_UPDATE_INTERVAL = "PeerUpdateInterval"

MIN_PEER_API_SERVER_TIMEOUT = dt.timedelta(milliseconds=10)
MIN_API_SERVER_TIMEOUT = dt.timedelta(milliseconds=10)
MIN_PEER_DIAL_TIMEOUT = dt.timedelta(milliseconds=10)
MIN_PEER_REQUEST_TIMEOUT = dt.timedelta(milliseconds=10)
MIN_API_CHECK_INTERVAL = dt.timedelta(seconds=1)
MIN_PEER_UPDATE_INTERVAL = dt.timedelta(seconds=10)

_VALID_EFFECTS = {effect.value for effect in TaintEffect}
_CHECKED_OPERATIONS = frozenset({"create", "update"})


def _text(value: Union[Enum, str]) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass
class SelfNodeRemediationConfigSpec:
    """Settings for the remediation agents running on every node."""

    watchdog_file_path: str = DEFAULT_WATCHDOG_PATH
    safe_time_to_assume_node_rebooted_seconds: int = DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT
    peer_api_server_timeout: Optional[dt.timedelta] = dt.timedelta(seconds=5)
    api_check_interval: Optional[dt.timedelta] = dt.timedelta(seconds=15)
    peer_update_interval: Optional[dt.timedelta] = dt.timedelta(minutes=15)
    api_server_timeout: Optional[dt.timedelta] = dt.timedelta(seconds=5)
    peer_dial_timeout: Optional[dt.timedelta] = dt.timedelta(seconds=5)
    peer_request_timeout: Optional[dt.timedelta] = dt.timedelta(seconds=5)
    max_api_error_threshold: int = DEFAULT_MAX_API_ERROR_THRESHOLD
    is_software_reboot_enabled: bool = DEFAULT_IS_SOFTWARE_REBOOT_ENABLED
    endpoint_health_check_url: str = ""
    host_port: int = DEFAULT_HOST_PORT
    custom_ds_tolerations: list[Toleration] = field(default_factory=list)


def validate_toleration(toleration: Toleration) -> None:
    """Reject a toleration with an unknown operator or effect."""
    operator = _text(toleration.operator)
    if operator:
        if operator == TolerationOperator.EXISTS.value:
            if toleration.value:
                message = (
                    "invalid value for toleration, value must be empty for Operator value is Exists"
                )
                logger.error(message)
                raise ValidationError(message)
        elif operator != TolerationOperator.EQUAL.value:
            message = f"invalid operator for toleration: {operator}"
            logger.error(
                "%s; valid values: %s",
                message,
                [op.value for op in TolerationOperator],
            )
            raise ValidationError(message)

    effect = _text(toleration.effect)
    if effect and effect not in _VALID_EFFECTS:
        message = f"invalid taint effect for toleration: {effect}"
        logger.error("%s; valid values: %s", message, [e.value for e in TaintEffect])
        raise ValidationError(message)


@dataclass
class SelfNodeRemediationConfig:
    """The cluster-wide configuration of the remediation agents."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SelfNodeRemediationConfigSpec = field(default_factory=SelfNodeRemediationConfigSpec)

    def _duration_fields(self) -> list[tuple[str, dt.timedelta, dt.timedelta]]:
        s = self.spec
        zero = dt.timedelta(0)
        return [
            (PEER_API_SERVER_TIMEOUT, s.peer_api_server_timeout or zero, MIN_PEER_API_SERVER_TIMEOUT),
            (API_SERVER_TIMEOUT, s.api_server_timeout or zero, MIN_API_SERVER_TIMEOUT),
            (PEER_DIAL_TIMEOUT, s.peer_dial_timeout or zero, MIN_PEER_DIAL_TIMEOUT),
            (PEER_REQUEST_TIMEOUT, s.peer_request_timeout or zero, MIN_PEER_REQUEST_TIMEOUT),
            (API_CHECK_INTERVAL, s.api_check_interval or zero, MIN_API_CHECK_INTERVAL),
            (PEER_UPDATE_INTERVAL, s.peer_update_interval or zero, MIN_PEER_UPDATE_INTERVAL),
        ]

    def _times_error(self) -> Optional[ValidationError]:
        message = "".join(
            f"\n{name} cannot be less than {format_duration(minimum)}"
            for name, value, minimum in self._duration_fields()
            if value < minimum
        )
        return ValidationError(message) if message else None

    def _tolerations_error(self) -> Optional[ValidationError]:
        try:
            self.validate_custom_tolerations()
        except ValidationError as error:
            return error
        return None

    def validate_times(self) -> None:
        """Reject any time field that is below its allowed minimum."""
        error = self._times_error()
        if error is not None:
            raise error

    def validate_custom_tolerations(self) -> None:
        """Reject the first invalid custom toleration."""
        for toleration in self.spec.custom_ds_tolerations:
            validate_toleration(toleration)

    def _admit(self, operation: str) -> None:
        """Run the checks that apply to an admission operation."""
        logger.info("validate %s name=%s", operation, self.metadata.name)
        if operation not in _CHECKED_OPERATIONS:
            return
        error = aggregate_errors([self._times_error(), self._tolerations_error()])
        if error is not None:
            raise error

    def validate_create(self) -> None:
        self._admit("create")

    def validate_update(self, old: SelfNodeRemediationConfig) -> None:
        self._admit("update")

    def validate_delete(self) -> None:
        """Deletion is always admitted."""
        self._admit("delete")


def new_default_config() -> SelfNodeRemediationConfig:
    """The configuration installed by default."""
    return SelfNodeRemediationConfig(
        metadata=ObjectMeta(name=CONFIG_CR_NAME),
        spec=SelfNodeRemediationConfigSpec(
            watchdog_file_path=DEFAULT_WATCHDOG_PATH,
            safe_time_to_assume_node_rebooted_seconds=DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT,
            is_software_reboot_enabled=DEFAULT_IS_SOFTWARE_REBOOT_ENABLED,
        ),
    )