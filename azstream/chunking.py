"""Stream chunking and block/blob sequence numbering."""

import base64
import hashlib
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional

from .errors import SourceReadFailure


def content_md5(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def iter_blocks(stream: BinaryIO, block_size: int) -> Iterator[bytes]:
    """Yield ``block_size`` byte blocks from ``stream``; the last may be shorter.

    Short reads (pipes, sockets) are accumulated until a block is full or the
    stream ends. Empty input yields nothing.
    """
    while True:
        parts = []
        remaining = block_size
        while remaining > 0:
            try:
                data = stream.read(remaining)
            except (OSError, ValueError) as exc:
                raise SourceReadFailure(f"Cannot read from input stream: {exc}") from exc
            if not data:
                break
            parts.append(data)
            remaining -= len(data)

        if parts:
            yield b"".join(parts)
        if remaining > 0:
            return


@dataclass(frozen=True)
class BlockDescriptor:
    global_index: int
    blob_sequence_index: int
    block_number: int
    block_id: str
    data: bytes
    content_md5: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"BlockDescriptor(global_index={self.global_index}, "
            f"sequence={self.blob_sequence_index}, block={self.block_number}, "
            f"size={len(self.data)})"
        )


@dataclass(frozen=True)
class BlobSequence:
    sequence_index: int
    block_count: int


class Sequencer:
    """Maps global block positions to blob sequences and block ids.

    Block ids are the base64 form of the block number zero-padded to five
    digits. Decoded ids sort in block order and never collide within a blob;
    the commit phase rebuilds them from position alone.
    """

    def __init__(self, blocks_per_blob: int, single_blob: bool = False,
                 verify_checksum: bool = False):
        self.blocks_per_blob = blocks_per_blob
        self.single_blob = single_blob
        self.verify_checksum = verify_checksum

    def blob_sequence_index(self, global_index: int) -> int:
        return global_index // self.blocks_per_blob

    def block_number(self, global_index: int) -> int:
        return global_index % self.blocks_per_blob

    @staticmethod
    def block_id(block_number: int) -> str:
        return base64.b64encode(f"{block_number:05d}".encode("ascii")).decode("ascii")

    def sequence_suffix(self, sequence_index: int) -> str:
        if self.single_blob:
            return ""
        return f".{sequence_index:03d}"

    def describe(self, global_index: int, data: bytes) -> BlockDescriptor:
        number = self.block_number(global_index)
        return BlockDescriptor(
            global_index=global_index,
            blob_sequence_index=self.blob_sequence_index(global_index),
            block_number=number,
            block_id=self.block_id(number),
            data=data,
            content_md5=content_md5(data) if self.verify_checksum else None,
        )

    def plan_sequences(self, block_count: int) -> List[BlobSequence]:
        """Blob sequences to commit once ``block_count`` blocks were staged.

        Zero blocks still produce one empty sequence so empty input creates
        an empty blob.
        """
        if block_count == 0:
            return [BlobSequence(0, 0)]

        count = -(-block_count // self.blocks_per_blob)
        sequences = [BlobSequence(i, self.blocks_per_blob) for i in range(count - 1)]
        last = block_count % self.blocks_per_blob or self.blocks_per_blob
        sequences.append(BlobSequence(count - 1, last))
        return sequences
