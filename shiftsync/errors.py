from __future__ import annotations


class SyncError(Exception):
    kind = "error"
    status_code = 500


class ValidationError(SyncError):
    kind = "validation"
    status_code = 400


class SecurityRejection(SyncError):
    kind = "security"
    status_code = 400

    def __init__(self, message: str, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason


class ContentError(SyncError):
    kind = "content"
    status_code = 400


class TransientError(SyncError):
    kind = "transient"
    status_code = 502


class PersistenceError(SyncError):
    kind = "persistence"
    status_code = 500


class NotFoundError(SyncError):
    kind = "not_found"
    status_code = 404
