"""Self node remediation: resource models, validation, an in-memory cluster store and a reconciler for unhealthy nodes."""

__version__ = "0.1.0"

__all__ = [
    "health",
    "meta",
    "features",
    "remediation",
    "template",
    "config",
    "cluster",
    "remediator",
    "reconciler",
]