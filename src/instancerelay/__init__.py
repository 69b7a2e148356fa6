"""
Instance Relay

Collects sightings of valuable game instances and serves the best ones back.
"""

__version__ = "0.1.0"

from .cache import (
    InstanceCache,
    InternalError,
    Item,
    RelayError,
    Report,
    ReportResult,
    ValidationError,
)

__all__ = [
    "InstanceCache",
    "InternalError",
    "Item",
    "RelayError",
    "Report",
    "ReportResult",
    "ValidationError",
]
