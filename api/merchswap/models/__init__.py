from merchswap.models.base import Base, TimestampMixin
from merchswap.models.event import Event, EventType
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope, VariantCase
from merchswap.models.rotation import RotationHistoryEntry, RotationTrigger

__all__ = [
    "Base",
    "TimestampMixin",
    "Case",
    "Event",
    "EventType",
    "Experiment",
    "ExperimentStatus",
    "RotationHistoryEntry",
    "RotationTrigger",
    "Scope",
    "VariantCase",
]
