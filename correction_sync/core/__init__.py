"""
Sessions, version-checked saves, conflicts, undo, offline replay and draft recovery.
"""

# Package initialization for the core module
from .editor import CorrectionEditor, BulkUpdateResult
from .save_coordinator import SaveCoordinator
from .conflicts import ConflictResolver, ResolutionIntent, build_conflict_rows
from .undo import UndoManager, UndoResult
from .offline_queue import OfflineQueue, QueueRunResult
from .autosave import AutoSaveRecovery, RecoveryNotice
