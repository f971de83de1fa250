"""Run-stage failures. Everything except LogoutFailure aborts the run."""
from typing import Any, Optional


class DedupError(RuntimeError):
    stage = "run"


class AuthenticationFailure(DedupError):
    stage = "auth"


class FetchFailure(DedupError):
    stage = "fetch"


class DeletionFailure(DedupError):
    stage = "delete"

    def __init__(self, message: str, record: Optional[Any] = None):
        super().__init__(message)
        self.record = record


class LogoutFailure(DedupError):
    stage = "logout"


__all__ = ["DedupError", "AuthenticationFailure", "FetchFailure", "DeletionFailure", "LogoutFailure"]
