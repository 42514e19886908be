"""Signed PUT calls for staging blocks and committing block lists."""

import logging
import re
import time
import urllib.parse
from pathlib import PurePosixPath
from typing import Dict, List, Mapping, Optional

from azure.core.exceptions import AzureError, ServiceRequestError, ServiceResponseError
from azure.core.pipeline.transport import RequestsTransport
from azure.core.rest import HttpRequest
from azure.storage.blob import BlobBlock, BlockState

from .auth import RequestSigner
from .chunking import BlockDescriptor, Sequencer, content_md5
from .config import Credentials, DestinationPath, UploadConfiguration
from .errors import InvalidArgument, RequestRejected, TransportFailure

BLOCK_CONTENT_TYPE = "application/octet-stream"
BLOCK_LIST_CONTENT_TYPE = "application/xml"

_ERROR_MESSAGE_RE = re.compile(r"<Message>(.*?)</Message>", re.DOTALL)


def build_block_list(block_count: int) -> List[BlobBlock]:
    """Block list for one blob: ids for block numbers 0..block_count-1."""
    return [
        BlobBlock(Sequencer.block_id(number), state=BlockState.LATEST)
        for number in range(block_count)
    ]


def serialize_block_list(blocks: List[BlobBlock]) -> bytes:
    body = ['<?xml version="1.0" encoding="utf-8"?><BlockList>']
    for block in blocks:
        body.append("<{0}>{1}</{0}>".format(BlockState(block.state).value, block.id))
    body.append("</BlockList>")
    return "".join(body).encode("utf-8")


def _guess_content_type(blob_name: str) -> str:
    suffix = PurePosixPath(blob_name).suffix.lower()
    return {
        ".csv": "text/csv",
        ".json": "application/json",
        ".zip": "application/zip",
        ".gz": "application/gzip",
        ".tgz": "application/gzip",
        ".tar": "application/x-tar",
        ".txt": "text/plain",
        ".tsv": "text/tab-separated-values",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
    }.get(suffix, "application/octet-stream")


class BlobTransport:
    """Issues the signed PUT requests of one upload session.

    Each call builds a fresh ``RequestSigner`` per attempt and retries
    network errors and 5xx responses up to ``config.max_attempts`` times.
    4xx responses are never retried.
    """

    def __init__(
        self,
        destination: DestinationPath,
        credentials: Credentials,
        config: UploadConfiguration,
        http_transport=None,
        logger: Optional[logging.Logger] = None,
    ):
        self.destination = destination
        self.credentials = credentials
        self.config = config
        self.sequencer = Sequencer(config.blocks_per_blob, config.single_blob)
        self.logger = logger or logging.getLogger(__name__)
        self._http = http_transport or RequestsTransport(
            connection_timeout=config.connection_timeout,
            read_timeout=config.read_timeout,
        )

    def __enter__(self) -> "BlobTransport":
        self._http.open()
        return self

    def __exit__(self, *exc_details) -> None:
        self._http.close()

    @property
    def base_url(self) -> str:
        return f"https://{self.credentials.account_name}.{self.config.endpoint}"

    def resource_path(self, sequence_index: int) -> str:
        path = self.destination.resource + self.sequencer.sequence_suffix(sequence_index)
        return urllib.parse.quote(path, safe="/$")

    def blob_url(self, sequence_index: int) -> str:
        return self.base_url + self.resource_path(sequence_index)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def put_block(self, block: BlockDescriptor) -> None:
        """Stage one block on its blob sequence."""
        if len(block.data) > self.config.block_size:
            raise InvalidArgument(
                f"Block {block.global_index} is {len(block.data)} bytes, "
                f"larger than the block size of {self.config.block_size}"
            )

        md5 = None
        if self.config.verify_checksum:
            md5 = block.content_md5 or content_md5(block.data)

        self._put(
            self.resource_path(block.blob_sequence_index),
            query={"comp": "block", "blockid": block.block_id},
            body=block.data,
            content_type=BLOCK_CONTENT_TYPE,
            md5=md5,
            description=f"block {block.global_index}",
        )

    def commit_blob_sequence(self, sequence_index: int, block_count: int) -> str:
        """Commit blocks 0..block_count-1 of a sequence; returns the blob URL."""
        body = serialize_block_list(build_block_list(block_count))
        md5 = content_md5(body) if self.config.verify_checksum else None

        self._put(
            self.resource_path(sequence_index),
            query={"comp": "blocklist"},
            body=body,
            content_type=BLOCK_LIST_CONTENT_TYPE,
            md5=md5,
            extra_headers={
                "x-ms-blob-content-type": _guess_content_type(self.destination.blob_name),
            },
            description=f"block list {sequence_index} ({block_count} blocks)",
        )
        return self.blob_url(sequence_index)

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _signed_request(
        self,
        path: str,
        query: Mapping[str, str],
        body: bytes,
        content_type: str,
        md5: Optional[str],
        extra_headers: Optional[Mapping[str, str]],
    ) -> HttpRequest:
        signer = RequestSigner(
            "PUT", path, content_md5=md5, content_type=content_type, query=query
        )
        for name, value in (extra_headers or {}).items():
            signer.add_header(name, value)
        signer.set_credentials(
            self.credentials.account_name,
            key=self.credentials.access_key,
            sas_token=self.credentials.sas_token,
        )
        url = self.base_url + path + "?" + urllib.parse.urlencode(signer.query_parameters())
        headers: Dict[str, str] = signer.request_headers()
        return HttpRequest("PUT", url, headers=headers, content=body)

    def _put(
        self,
        path: str,
        query: Mapping[str, str],
        body: bytes,
        content_type: str,
        md5: Optional[str] = None,
        extra_headers: Optional[Mapping[str, str]] = None,
        description: str = "request",
    ) -> None:
        max_attempts = self.config.max_attempts
        last_exc: Optional[BaseException] = None
        last_status: Optional[int] = None

        for attempt in range(1, max_attempts + 1):
            request = self._signed_request(path, query, body, content_type, md5, extra_headers)
            self.logger.debug(f"PUT {path} {dict(query)} attempt {attempt}/{max_attempts}")
            try:
                response = self._http.send(request)
            except (ServiceRequestError, ServiceResponseError, AzureError) as exc:
                last_exc = exc
                last_status = None
                reason = f"transient error — {exc}"
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return
                message = _error_message(response)
                if status < 500:
                    self.logger.error(f"{description}: rejected with status {status} — {message}")
                    raise RequestRejected(status, message)
                last_exc = None
                last_status = status
                reason = f"server error {status} — {message}"

            if attempt >= max_attempts:
                break
            delay = self.config.retry_base_delay * 2 ** (attempt - 1)
            self.logger.warning(
                f"{description}: {reason} (attempt {attempt}/{max_attempts}), "
                f"retrying in {delay}s"
            )
            time.sleep(delay)

        self.logger.error(f"{description}: failed after {max_attempts} attempts — {reason}")
        raise TransportFailure(
            f"{description} failed after {max_attempts} attempts: {reason}",
            status_code=last_status,
            last_error=last_exc,
        )


def _error_message(response) -> str:
    text = response.text() or ""
    match = _ERROR_MESSAGE_RE.search(text)
    if match:
        return match.group(1).strip()
    return getattr(response, "reason", None) or text[:200]
