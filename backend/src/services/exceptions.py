"""Shared exceptions for service layer operations."""


class StoreError(Exception):
    """
    Raised when a record store operation fails.

    Covers network, authorization and validation failures reported by the
    database. The message is safe to show to the user.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class BookmarkNotFoundError(StoreError):
    """Raised when a bookmark doesn't exist or doesn't belong to the requester."""

    def __init__(self, bookmark_id: object) -> None:
        self.bookmark_id = bookmark_id
        super().__init__("Bookmark not found")


class FeedUnavailableError(Exception):
    """Raised when the change-notification feed cannot accept a subscription."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
