"""
Streams an input of unknown length into one or more Azure block blobs.

The upload runs in two phases:

    1. Blocks are read from the source one at a time, numbered in stream
       order and staged through a bounded thread pool. Reading the next
       block waits for a free slot, so at most ``concurrency`` blocks are
       held in memory.
    2. Once every block is staged, one block list is committed per blob
       sequence and the resulting blob URLs are returned in order.

Inputs larger than ``block_size * blocks_per_blob`` are spread over several
blobs named ``<destination>.000``, ``<destination>.001`` and so on. The first
failure aborts the whole upload; blocks already staged are left for the
service to garbage-collect.
"""

import enum
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import BinaryIO, List, Optional, Union

from .chunking import BlobSequence, BlockDescriptor, Sequencer, iter_blocks
from .config import Credentials, DestinationPath, UploadConfiguration
from .errors import BlobSizeExceeded, InvalidArgument, SourceReadFailure
from .transport import BlobTransport


class UploadState(str, enum.Enum):
    NOT_STARTED = "not-started"
    UPLOADING = "uploading"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class StreamUploader:
    """Uploads a single stream using the Block Blob pattern."""

    def __init__(
        self,
        source: BinaryIO,
        destination: Union[str, DestinationPath],
        credentials: Credentials,
        config: Optional[UploadConfiguration] = None,
        logger: Optional[logging.Logger] = None,
        http_transport=None,
    ) -> None:
        if isinstance(destination, str):
            destination = DestinationPath.parse(destination)
        if not isinstance(credentials, Credentials):
            raise InvalidArgument("credentials must be a Credentials instance")

        self.source = source
        self.destination = destination
        self.credentials = credentials
        self.config = config or UploadConfiguration()
        self.logger = logger or logging.getLogger(__name__)

        self.sequencer = Sequencer(
            self.config.blocks_per_blob,
            self.config.single_blob,
            verify_checksum=self.config.verify_checksum,
        )
        self.transport = BlobTransport(
            destination,
            credentials,
            self.config,
            http_transport=http_transport,
            logger=self.logger,
        )

        self.state = UploadState.NOT_STARTED
        self.block_count = 0
        self.bytes_staged = 0

        self._slots = threading.BoundedSemaphore(self.config.concurrency)
        self._lock = threading.Lock()
        self._failure: Optional[BaseException] = None
        self._t0 = 0.0

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(self) -> List[str]:
        """Execute the upload. Returns the blob URLs in sequence order."""
        if self.state is not UploadState.NOT_STARTED:
            raise InvalidArgument(f"Upload already ran (state: {self.state.value})")

        self.logger.info(
            f"Target: {self.credentials.account_name}{self.destination}  |  "
            f"Block: {self.config.block_size:,} bytes  |  "
            f"Blocks/blob: {self.config.blocks_per_blob}  |  "
            f"Threads: {self.config.concurrency}"
        )
        try:
            with self.transport:
                self._stage_blocks()
                urls = self._commit_sequences()
        except Exception:
            self.state = UploadState.FAILED
            raise

        self.state = UploadState.DONE
        self.logger.info(f"Upload complete: {len(urls)} blob(s), {self.bytes_staged:,} bytes.")
        return urls

    def _stage_blocks(self) -> None:
        self.state = UploadState.UPLOADING
        self._t0 = time.monotonic()
        blocks = iter_blocks(self.source, self.config.block_size)
        global_index = 0

        with ThreadPoolExecutor(max_workers=self.config.concurrency) as pool:
            while True:
                # Wait for a free slot before pulling more data from the source
                self._slots.acquire()
                if self._failure is not None:
                    self._slots.release()
                    break
                try:
                    data = next(blocks, None)
                except SourceReadFailure as exc:
                    self._slots.release()
                    self._record_failure(exc)
                    break
                if data is None:
                    self._slots.release()
                    break

                block = self.sequencer.describe(global_index, data)
                if self.config.single_blob and block.blob_sequence_index > 0:
                    self._slots.release()
                    self._record_failure(BlobSizeExceeded(self.config.max_blob_bytes))
                    break

                global_index += 1
                future = pool.submit(self._upload_block, block)
                future.add_done_callback(self._block_done)

        if self._failure is not None:
            raise self._failure
        self.block_count = global_index

    def _upload_block(self, block: BlockDescriptor) -> None:
        self.transport.put_block(block)

        with self._lock:
            self.bytes_staged += len(block.data)
            staged = self.bytes_staged
        elapsed = max(time.monotonic() - self._t0, 0.001)
        speed_mb = (staged / elapsed) / (1024 * 1024)
        self.logger.info(
            f"block {block.global_index} staged (blob {block.blob_sequence_index}, "
            f"#{block.block_number})  total={staged:,} bytes  speed={speed_mb:.1f} MB/s"
        )

    def _block_done(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            self._record_failure(exc)
        self._slots.release()

    def _record_failure(self, exc: BaseException) -> None:
        with self._lock:
            if self._failure is not None:
                return
            self._failure = exc
        self.logger.error(f"Fatal: {exc}. Aborting upload.")

    def _commit_sequences(self) -> List[str]:
        self.state = UploadState.COMMITTING
        sequences = self.sequencer.plan_sequences(self.block_count)
        self.logger.info(
            f"All {self.block_count} block(s) staged — committing {len(sequences)} block list(s) ..."
        )

        def commit(sequence: BlobSequence) -> str:
            url = self.transport.commit_blob_sequence(
                sequence.sequence_index, sequence.block_count
            )
            self.logger.info(f"Committed {url} ({sequence.block_count} blocks).")
            return url

        with ThreadPoolExecutor(max_workers=len(sequences)) as pool:
            return list(pool.map(commit, sequences))


def upload_stream(
    source: BinaryIO,
    destination: Union[str, DestinationPath],
    credentials: Credentials,
    config: Optional[UploadConfiguration] = None,
    logger: Optional[logging.Logger] = None,
) -> List[str]:
    """Upload ``source`` to ``destination`` and return the blob URLs."""
    return StreamUploader(source, destination, credentials, config, logger).run()
