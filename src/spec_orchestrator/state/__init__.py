from spec_orchestrator.state.checkpoint import Checkpoint, CheckpointStore, checkpoint_path
from spec_orchestrator.state.lock import LockManager, lock_path
from spec_orchestrator.state.skips import (
    clear_skips,
    pending_skips,
    request_skip,
    skip_requests_path,
)

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "LockManager",
    "checkpoint_path",
    "clear_skips",
    "lock_path",
    "pending_skips",
    "request_skip",
    "skip_requests_path",
]
