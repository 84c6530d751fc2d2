from __future__ import annotations

from typing import Optional


class ProviderError(RuntimeError):
    """Upstream fetch failed after retries."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class ValidationError(ValueError):
    """Client-class error: the request cannot be served as asked, retrying will not help."""

    status_code = 400

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        out = {"error": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFoundError(ValidationError):
    status_code = 404


class MappingConflict(Exception):
    """Another writer inserted the same (entity_kind, external_id) mapping first."""

    def __init__(self, entity_kind: str, external_id: str):
        super().__init__(f"mapping already exists kind={entity_kind} external_id={external_id}")
        self.entity_kind = entity_kind
        self.external_id = external_id


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value if len(value) <= limit else value[:limit]


def truncate_tail(value: Optional[str], limit: int) -> Optional[str]:
    """Keep the end of a traceback, where the failing frame is."""
    if value is None:
        return None
    return value if len(value) <= limit else value[-limit:]
