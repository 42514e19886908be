"""Stream arbitrarily large inputs into Azure Blob Storage block blobs."""

__version__ = "0.1.0"

from .auth import RequestSigner
from .chunking import BlobSequence, BlockDescriptor, Sequencer, iter_blocks
from .config import Credentials, DestinationPath, UploadConfiguration, resolve_credentials
from .errors import (
    BlobSizeExceeded,
    InvalidArgument,
    NotConfigured,
    RequestRejected,
    SourceReadFailure,
    TransportFailure,
    UploadError,
)
from .uploader import StreamUploader, UploadState, upload_stream

__all__ = [
    "BlobSequence",
    "BlobSizeExceeded",
    "BlockDescriptor",
    "Credentials",
    "DestinationPath",
    "InvalidArgument",
    "NotConfigured",
    "RequestRejected",
    "RequestSigner",
    "Sequencer",
    "SourceReadFailure",
    "StreamUploader",
    "TransportFailure",
    "UploadConfiguration",
    "UploadError",
    "UploadState",
    "iter_blocks",
    "resolve_credentials",
    "upload_stream",
]
