"""Typed failures raised by azstream.

Every error that can end an upload session derives from ``UploadError`` so
callers can catch the whole family in one place.
"""

from typing import Optional


class UploadError(RuntimeError):
    """Base class for all upload failures."""
    pass


class InvalidArgument(UploadError, ValueError):
    """Bad configuration, destination path or credentials shape."""
    pass


class NotConfigured(UploadError):
    """A request signer was used before credentials were set."""
    pass


class SourceReadFailure(UploadError):
    """Reading from the input stream failed."""
    pass


class BlobSizeExceeded(UploadError):
    """Input does not fit in a single blob while suffixes are disabled."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        super().__init__(
            f"Input exceeds the maximum size of a single blob ({max_bytes:,} bytes). "
            f"Increase the block size or allow numeric suffixes."
        )


class TransportFailure(UploadError):
    """Network error, or every retry attempt was used up."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 last_error: Optional[BaseException] = None):
        self.status_code = status_code
        self.last_error = last_error
        super().__init__(message)


class RequestRejected(UploadError):
    """The service answered with a terminal non-2xx status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Request rejected with status {status_code}: {message}")
