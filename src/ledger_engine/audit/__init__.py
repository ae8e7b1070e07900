"""Activity diffing and the append-only activity trail."""

from ledger_engine.audit.diff import ActivityDiffRecorder, FieldChange, title_label
from ledger_engine.audit.recorder import ActivityTrackWriter, get_activity

__all__ = [
    "ActivityDiffRecorder",
    "ActivityTrackWriter",
    "FieldChange",
    "get_activity",
    "title_label",
]
