"""Cluster capabilities that change which remediation strategies are allowed."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, fields
from typing import Iterator


@dataclass
class FeatureGates:
    """Whether the out-of-service taint is supported and generally available."""

    out_of_service_taint_supported: bool = False
    out_of_service_taint_ga: bool = False

    @contextmanager
    def override(self, **kwargs: bool) -> Iterator[FeatureGates]:
        """Temporarily set gates, restoring the previous values on exit."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(kwargs) - known)
        if unknown:
            raise TypeError(f"unknown feature gates: {', '.join(unknown)}")
        saved = {name: getattr(self, name) for name in kwargs}
        for name, value in kwargs.items():
            setattr(self, name, value)
        try:
            yield self
        finally:
            for name, value in saved.items():
                setattr(self, name, value)


gates = FeatureGates()