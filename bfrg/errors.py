"""
Error taxonomy for bfrg runs.

Fatal errors end the run immediately and trigger teardown. Recoverable
failures never raise on their own: they are escalated, and only an "abort"
answer turns them into BackupAborted.
"""


class BackupError(Exception):
    """Base exception for all run failures."""

    exit_status = 1


class FatalError(BackupError):
    """Raised when a step fails that the run cannot survive."""

    def __init__(self, message: str, exit_status: int = 1):
        super().__init__(message)
        self.exit_status = exit_status or 1


class BackupAborted(BackupError):
    """Raised when escalation of a recoverable failure answers abort."""


class RunInterrupted(BackupError):
    """Raised when a signal arrives and no new invocation may start."""

    exit_status = 130
