"""
Error kinds raised by the stream core.

The HTTP layer maps these onto status codes; nothing below api.py knows
about HTTP.
"""


class StreamError(Exception):
    """Base class for all stream core errors."""


class UploadValidationError(StreamError):
    """A required upload field is missing or unusable."""


class UploadTooLarge(UploadValidationError):
    """The uploaded file exceeds MAX_FILE_SIZE."""


class CapacityExceeded(StreamError):
    """The maximum number of concurrent streams is already running."""


class StreamNotFound(StreamError):
    """No registered session has the requested stream id."""


class InvalidMergeId(StreamError):
    """The merge token is unknown, already consumed or expired."""


class MergeFailed(StreamError):
    """The external merge step exited with a non-zero status."""


class SpawnFailed(StreamError):
    """The external transcoder could not be started."""
