"""
Error taxonomy for the sync queue.

The processor routes on the exception class:
- SyncValidationError -> item `failed`, never retried
- ConflictDetected    -> item `conflict`, surfaced for operator review
- anything else       -> transient; retried until the retry budget is spent
"""

from typing import Optional


class SyncError(Exception):
    pass


class SyncValidationError(SyncError):
    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = [str(e) for e in (errors or [])] or ["invalid payload"]
        super().__init__("validation failed: " + "; ".join(self.errors))


class TransientSyncError(SyncError):
    pass


class ConflictDetected(SyncError):
    # Not a failure: a routing signal carrying the resolver's decision.
    def __init__(self, conflict_type: str, resolution: Optional[dict] = None, message: Optional[str] = None):
        self.conflict_type = conflict_type
        self.resolution = resolution or {}
        super().__init__(message or (self.resolution.get("message") or f"unresolved {conflict_type} conflict"))


class TerminalFailure(SyncError):
    def __init__(self, item_id: str, retry_count: int, message: str):
        self.item_id = item_id
        self.retry_count = retry_count
        super().__init__(f"item {item_id} failed after {retry_count} attempts: {message}")


class InvalidTransition(SyncError):
    def __init__(self, item_id: str, current: str, target: str):
        self.item_id = item_id
        self.current = current
        self.target = target
        super().__init__(f"item {item_id} cannot move from {current} to {target}")
