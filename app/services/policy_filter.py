from typing import Optional

from app.models.records import Role
from app.services.errors import BlockedError, TooLargeError
from config import Settings


def _normalize_content_type(content_type: str) -> str:
    # Drop parameters such as "; charset=utf-8"
    return content_type.split(";", 1)[0].strip().lower()


class PolicyFilter:
    """Blocklist and size ceilings. Pure functions of their inputs and the settings."""

    def __init__(self, settings: Settings):
        self.blocked_extensions = frozenset(ext.lower().lstrip(".") for ext in settings.blocked_extensions)
        self.blocked_content_types = frozenset(_normalize_content_type(ct) for ct in settings.blocked_content_types)
        self._ceilings = {role: settings.limit_bytes(role) for role in Role}

    def ceiling_for(self, role: Role) -> Optional[int]:
        return self._ceilings[role]

    def check_blocklist(self, content_type: str, extension: str) -> None:
        normalized = _normalize_content_type(content_type or "")
        if normalized in self.blocked_content_types:
            raise BlockedError(normalized)
        ext = (extension or "").lower().lstrip(".")
        if ext in self.blocked_extensions:
            raise BlockedError(ext)

    def check_size(self, size_bytes: int, role: Role) -> None:
        ceiling = self.ceiling_for(role)
        if ceiling is not None and size_bytes > ceiling:
            raise TooLargeError(size_bytes, ceiling)

    def check(self, content_type: str, extension: str, size_bytes: int, role: Role) -> None:
        """Raise BlockedError or TooLargeError if the upload is not admissible."""
        self.check_blocklist(content_type, extension)
        self.check_size(size_bytes, role)
