from __future__ import annotations


class ProfileDataError(Exception):
    """Base class for every error the data layer reports to command handlers."""


class UgcDisabledError(ProfileDataError):
    def __init__(self, tag_slug: str = "") -> None:
        super().__init__("UGC tags are disabled in this server.")
        self.tag_slug = tag_slug


class LimitReachedError(ProfileDataError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Max tags per user reached ({limit}).")
        self.limit = int(limit)


class QuotaExceededError(ProfileDataError):
    def __init__(self, attempts: int) -> None:
        super().__init__("Database quota exceeded. Please try again later.")
        self.attempts = int(attempts)


class BackendError(ProfileDataError):
    pass


class InvalidInputError(ProfileDataError, ValueError):
    pass
