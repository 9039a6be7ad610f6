from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by the auth stores."""


class ConstraintViolation(StorageError):
    """A unique key of the auth store is already taken (account email, session id).

    ``detail`` names the offending field so callers can map it to a conflict
    without parsing the message.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def fields(self) -> list[str]:
        return sorted(self.detail)
