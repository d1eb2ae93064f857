"""Shared enums used across benchfleet."""

from .enums import (
    InstallMethod,
    InstanceSize,
    Outcome,
    Phase,
    Reachability,
    Variant,
    VariantStatus,
)

__all__ = [
    "InstallMethod",
    "InstanceSize",
    "Outcome",
    "Phase",
    "Reachability",
    "Variant",
    "VariantStatus",
]
