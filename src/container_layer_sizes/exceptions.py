"""Custom exceptions for container layer size analysis."""


class LayerSizesError(Exception):
    """Base exception for all layer size analysis errors."""

    pass


class ReferenceParseError(LayerSizesError):
    """Raised when an image reference cannot be parsed."""

    pass


class TransportError(LayerSizesError):
    """Raised when pulling or copying an image fails."""

    pass


class CancellationError(LayerSizesError):
    """Raised when a task is cancelled while it is waiting on blocking work."""

    pass


class DeadlineExceededError(CancellationError):
    """Raised when a task runs past its deadline."""

    pass


class ManifestDecodeError(LayerSizesError):
    """Raised when an image manifest or config cannot be decoded."""

    pass


class MediaTypeMismatchError(LayerSizesError):
    """Raised when a blob does not have the expected media type."""

    pass


class DigestFormatError(LayerSizesError):
    """Raised when a digest is not of the form algorithm:hex."""

    pass


class StorageError(LayerSizesError):
    """Raised when the history store fails to apply an operation."""

    pass


class NotFoundError(LayerSizesError):
    """Raised when a task or an image history does not exist."""

    pass


class AmbiguousResultError(LayerSizesError):
    """Raised when a lookup that must be unique matches several records."""

    pass


class TaskStateError(LayerSizesError):
    """Raised when a task is not in the state an operation requires."""

    pass
