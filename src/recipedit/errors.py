"""Typed errors for recipedit."""


class RecipeditError(Exception):
    """Base exception for all recipedit errors."""


class ValidationError(RecipeditError):
    """Raised when an imported file or document payload fails validation.

    No partial state change happens when this is raised.
    """

    def __init__(self, message: str, *, source: str | None = None) -> None:
        """Initialize with a user-facing message and the offending source name."""
        self.source = source
        super().__init__(message if source is None else f"{source}: {message}")


class StorageError(RecipeditError):
    """Raised when the durable store is unavailable or a write fails."""


class BlobIntegrityError(StorageError):
    """Raised when stored blob data does not match its recorded SHA-256 digest."""

    def __init__(self, key: str, expected: str, actual: str) -> None:
        """Initialize with the blob key and mismatched digests."""
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"Blob integrity check failed for {key}: expected sha256={expected}, got {actual}")


class SessionError(RecipeditError):
    """Raised for invalid operations on an editor session."""
