"""Object metadata, taints, tolerations, status conditions and error helpers."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional

GROUP = "self-node-remediation.medik8s.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

_MICROSECOND = dt.timedelta(microseconds=1)


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ValidationError(Exception):
    """A resource failed validation; may carry several underlying errors."""

    def __init__(self, message: str, errors: Iterable[BaseException] = ()) -> None:
        super().__init__(message)
        self.errors: tuple[BaseException, ...] = tuple(errors)


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A single status condition of a resource."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: Optional[dt.datetime] = None


@dataclass
class OwnerReference:
    kind: str
    name: str
    api_version: str = ""
    uid: str = ""


@dataclass
class ObjectMeta:
    """Identity and bookkeeping fields shared by every resource."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    resource_version: str = ""
    uid: str = ""
    creation_timestamp: Optional[dt.datetime] = None
    deletion_timestamp: Optional[dt.datetime] = None


class TaintEffect(str, Enum):
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


@dataclass
class Taint:
    key: str
    effect: str
    value: str = ""
    time_added: Optional[dt.datetime] = None

    def matches(self, other: Taint) -> bool:
        """Two taints match when their key and effect are the same."""
        return self.key == other.key and self.effect == other.effect


class TolerationOperator(str, Enum):
    EQUAL = "Equal"
    EXISTS = "Exists"


@dataclass
class Toleration:
    key: str = ""
    operator: str = ""
    value: str = ""
    effect: str = ""
    toleration_seconds: Optional[int] = None


def taint_exists(taints: Iterable[Taint], taint: Taint) -> bool:
    """Whether any of ``taints`` matches ``taint``."""
    return any(existing.matches(taint) for existing in taints)


def delete_taint(taints: Iterable[Taint], taint: Taint) -> tuple[list[Taint], bool]:
    """Return the taints without those matching ``taint`` and whether any were removed."""
    original = list(taints)
    remaining = [existing for existing in original if not existing.matches(taint)]
    return remaining, len(remaining) != len(original)


def find_status_condition(conditions: Iterable[Condition], condition_type: str) -> Optional[Condition]:
    """The condition of the given type, or None."""
    return next((c for c in conditions if c.type == condition_type), None)


def set_status_condition(conditions: list[Condition], condition: Condition) -> None:
    """Add or update a condition in place, moving the transition time only on status change."""
    existing = find_status_condition(conditions, condition.type)
    if existing is None:
        conditions.append(
            replace(condition, last_transition_time=condition.last_transition_time or _now())
        )
        return
    if existing.status != condition.status:
        existing.status = condition.status
        existing.last_transition_time = condition.last_transition_time or _now()
    existing.reason = condition.reason
    existing.message = condition.message
    existing.observed_generation = condition.observed_generation


def is_status_condition_present_and_equal(
    conditions: Iterable[Condition], condition_type: str, status: ConditionStatus
) -> bool:
    """Whether a condition of the given type exists with the given status."""
    found = find_status_condition(conditions, condition_type)
    return found is not None and found.status == status


def _split_fraction(value: int, precision: int) -> tuple[int, str]:
    scale = 10**precision
    digits = f"{value % scale:0{precision}d}".rstrip("0")
    return value // scale, f".{digits}" if digits else ""


def format_duration(value: dt.timedelta) -> str:
    """Render a duration compactly, e.g. ``10ms``, ``1.5s`` or ``1h0m0s``."""
    nanos = (value // _MICROSECOND) * 1000
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)
    if nanos < 1_000_000_000:
        if nanos < 1000:
            return f"{sign}{nanos}ns"
        if nanos < 1_000_000:
            whole, frac = _split_fraction(nanos, 3)
            return f"{sign}{whole}{frac}\u00b5s"
        whole, frac = _split_fraction(nanos, 6)
        return f"{sign}{whole}{frac}ms"
    seconds, frac = _split_fraction(nanos, 9)
    text = f"{seconds % 60}{frac}s"
    minutes = seconds // 60
    if minutes:
        text = f"{minutes % 60}m{text}"
        hours = minutes // 60
        if hours:
            text = f"{hours}h{text}"
    return sign + text


def aggregate_errors(errors: Iterable[Optional[BaseException]]) -> Optional[ValidationError]:
    """Combine errors into one, ignoring ``None``; returns None when nothing failed."""
    flat: list[BaseException] = []
    for error in errors:
        if error is None:
            continue
        if isinstance(error, ValidationError) and error.errors:
            flat.extend(error.errors)
        else:
            flat.append(error)
    if not flat:
        return None
    messages = list(dict.fromkeys(str(error) for error in flat))
    message = messages[0] if len(messages) == 1 else "[" + ", ".join(messages) + "]"
    return ValidationError(message, flat)