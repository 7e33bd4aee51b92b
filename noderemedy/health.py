"""Result codes of a peer health check."""

from enum import IntEnum


class HealthCheckResponseCode(IntEnum):
    """Outcome reported when one agent asks about the health of a node."""

    REQUEST_FAILED = -1
    HEALTHY = 1
    UNHEALTHY = 2
    API_ERROR = 3