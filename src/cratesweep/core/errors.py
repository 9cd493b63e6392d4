"""Exceptions raised by the cache model and the policy layer."""

from __future__ import annotations


class CacheRootError(Exception):
    """Raised when the cache root cannot be located or does not exist."""


class PolicyInputError(ValueError):
    """Raised when a policy argument is malformed.

    Always raised before a removal plan is built, so nothing on disk
    has been touched when a caller sees it.
    """


class ScanError(Exception):
    """Raised when a scan hit errors and found nothing at all.

    ``warnings`` holds the errors the scan collected.
    """

    def __init__(self, message: str, warnings: list[str] | None = None) -> None:
        super().__init__(message)
        self.warnings = list(warnings or [])
