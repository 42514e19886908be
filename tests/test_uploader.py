"""Tests for the two-phase stream upload."""

import base64
import io
import threading

import pytest

from azstream.chunking import content_md5
from azstream.config import MB, UploadConfiguration
from azstream.errors import (
    BlobSizeExceeded,
    InvalidArgument,
    RequestRejected,
    SourceReadFailure,
)
from azstream.uploader import StreamUploader, UploadState, upload_stream

from .conftest import ACCOUNT, FakeResponse, FakeTransport

BASE = f"https://{ACCOUNT}.blob.core.windows.net"


def make_uploader(data, credentials, http, destination="/backups/archive.tar", **config):
    source = data if hasattr(data, "read") else io.BytesIO(data)
    return StreamUploader(
        source,
        destination,
        credentials,
        UploadConfiguration(**config),
        http_transport=http,
    )


def staged_bytes(http):
    """Reassemble staged data ordered by blob path and decoded block id."""
    def key(request):
        block_id = FakeTransport.query(request)["blockid"]
        return FakeTransport.path(request), int(base64.b64decode(block_id))
    return b"".join(r.content for r in sorted(http.block_requests(), key=key))


def committed_ids(request):
    body = request.content.decode("utf-8")
    return [
        part.split("</Latest>")[0]
        for part in body.split("<Latest>")[1:]
    ]


class CountingSource(io.RawIOBase):
    """Checks the number of outstanding blocks every time data is pulled."""

    def __init__(self, data, concurrency, completed):
        self._stream = io.BytesIO(data)
        self._concurrency = concurrency
        self._completed = completed
        self.blocks_read = 0
        self.violations = []

    def readable(self):
        return True

    def read(self, size=-1):
        outstanding = self.blocks_read - len(self._completed)
        if outstanding >= self._concurrency:
            self.violations.append(outstanding)
        chunk = self._stream.read(size)
        if chunk:
            self.blocks_read += 1
        return chunk


class FailingSource(io.RawIOBase):
    def __init__(self, good_reads):
        self._good_reads = good_reads

    def readable(self):
        return True

    def read(self, size=-1):
        if self._good_reads == 0:
            raise OSError("input/output error")
        self._good_reads -= 1
        return b"z" * size


class TestSingleSequence:
    """Test uploads that fit in one blob."""

    def test_blocks_and_commit(self, shared_key_credentials, fake_transport):
        data = bytes(range(256)) * 45
        uploader = make_uploader(data, shared_key_credentials, fake_transport, block_size=5 * 256)

        urls = uploader.run()

        assert urls == [f"{BASE}/backups/archive.tar.000"]
        blocks = fake_transport.block_requests()
        assert sorted(len(r.content) for r in blocks) == [5 * 256] * 9
        assert staged_bytes(fake_transport) == data

        [commit] = fake_transport.commit_requests()
        assert committed_ids(commit) == [
            base64.b64encode(f"{n:05d}".encode()).decode() for n in range(9)
        ]
        assert uploader.state is UploadState.DONE
        assert uploader.block_count == 9
        assert uploader.bytes_staged == len(data)

    @pytest.mark.parametrize("single_blob,suffix", [(False, ".000"), (True, "")])
    def test_45mb_in_20mb_blocks(self, shared_key_credentials, fake_transport, single_blob, suffix):
        urls = make_uploader(
            bytes(45 * MB), shared_key_credentials, fake_transport,
            block_size=20 * MB, single_blob=single_blob,
        ).run()

        assert urls == [f"{BASE}/backups/archive.tar{suffix}"]
        sizes = sorted(len(r.content) for r in fake_transport.block_requests())
        assert sizes == [5 * MB, 20 * MB, 20 * MB]
        [commit] = fake_transport.commit_requests()
        decoded = [base64.b64decode(i).decode() for i in committed_ids(commit)]
        assert decoded == ["00000", "00001", "00002"]

    @pytest.mark.parametrize("verify_checksum", [True, False])
    def test_block_checksums(self, shared_key_credentials, fake_transport, verify_checksum):
        make_uploader(
            b"abcdefghij", shared_key_credentials, fake_transport,
            block_size=4, verify_checksum=verify_checksum,
        ).run()

        for request in fake_transport.block_requests():
            if verify_checksum:
                assert request.headers["Content-MD5"] == content_md5(request.content)
            else:
                assert "Content-MD5" not in request.headers

    def test_short_last_block(self, shared_key_credentials, fake_transport):
        data = b"a" * 20 + b"b" * 20 + b"c" * 5
        make_uploader(data, shared_key_credentials, fake_transport, block_size=20).run()

        assert sorted(len(r.content) for r in fake_transport.block_requests()) == [5, 20, 20]
        [commit] = fake_transport.commit_requests()
        assert committed_ids(commit) == ["MDAwMDA=", "MDAwMDE=", "MDAwMDI="]
        assert staged_bytes(fake_transport) == data

    def test_single_blob_has_no_suffix(self, shared_key_credentials, fake_transport):
        urls = make_uploader(
            b"x" * 10, shared_key_credentials, fake_transport, block_size=4, single_blob=True
        ).run()
        assert urls == [f"{BASE}/backups/archive.tar"]
        assert {FakeTransport.path(r) for r in fake_transport.requests} == {"/backups/archive.tar"}

    def test_empty_input_commits_empty_blob(self, shared_key_credentials, fake_transport):
        uploader = make_uploader(b"", shared_key_credentials, fake_transport)

        urls = uploader.run()

        assert urls == [f"{BASE}/backups/archive.tar.000"]
        assert fake_transport.block_requests() == []
        [commit] = fake_transport.commit_requests()
        assert committed_ids(commit) == []
        assert uploader.block_count == 0

    def test_exactly_full_single_blob(self, shared_key_credentials, fake_transport):
        urls = make_uploader(
            b"x" * 8, shared_key_credentials, fake_transport,
            block_size=4, blocks_per_blob=2, single_blob=True,
        ).run()
        assert urls == [f"{BASE}/backups/archive.tar"]


class TestMultipleSequences:
    """Test uploads spread over several blobs."""

    def test_rolls_over_to_next_blob(self, shared_key_credentials, fake_transport):
        data = b"0123456789"
        urls = make_uploader(
            data, shared_key_credentials, fake_transport, block_size=2, blocks_per_blob=2
        ).run()

        assert urls == [
            f"{BASE}/backups/archive.tar.000",
            f"{BASE}/backups/archive.tar.001",
            f"{BASE}/backups/archive.tar.002",
        ]
        commits = sorted(fake_transport.commit_requests(), key=FakeTransport.path)
        assert [len(committed_ids(c)) for c in commits] == [2, 2, 1]
        assert committed_ids(commits[2]) == ["MDAwMDA="]

        paths = [FakeTransport.path(r) for r in fake_transport.block_requests()]
        assert sorted(paths) == [
            "/backups/archive.tar.000", "/backups/archive.tar.000",
            "/backups/archive.tar.001", "/backups/archive.tar.001",
            "/backups/archive.tar.002",
        ]
        assert staged_bytes(fake_transport) == data

    def test_commits_start_after_all_blocks(self, shared_key_credentials, fake_transport):
        make_uploader(
            b"x" * 9, shared_key_credentials, fake_transport, block_size=1, blocks_per_blob=3
        ).run()
        kinds = [FakeTransport.query(r)["comp"] for r in fake_transport.requests]
        assert kinds == ["block"] * 9 + ["blocklist"] * 3

    def test_single_blob_overflow(self, shared_key_credentials, fake_transport):
        uploader = make_uploader(
            b"x" * 9, shared_key_credentials, fake_transport,
            block_size=4, blocks_per_blob=2, single_blob=True,
        )

        with pytest.raises(BlobSizeExceeded) as excinfo:
            uploader.run()

        assert excinfo.value.max_bytes == 8
        assert fake_transport.commit_requests() == []
        assert len(fake_transport.block_requests()) <= 2
        assert uploader.state is UploadState.FAILED


class TestFailures:
    """Test that the first failure aborts the upload."""

    def test_block_rejected(self, shared_key_credentials, no_sleep):
        def respond(request, index):
            if FakeTransport.query(request)["comp"] == "block":
                return FakeResponse(404, "<Error><Message>ContainerNotFound</Message></Error>")
            return FakeResponse(201)

        http = FakeTransport(respond)
        uploader = make_uploader(b"x" * 40, shared_key_credentials, http, block_size=4)

        with pytest.raises(RequestRejected) as excinfo:
            uploader.run()

        assert excinfo.value.status_code == 404
        assert http.commit_requests() == []
        assert len(http.block_requests()) < 10
        assert uploader.state is UploadState.FAILED
        assert http.closed

    def test_commit_rejected(self, shared_key_credentials, no_sleep):
        def respond(request, index):
            if FakeTransport.query(request)["comp"] == "blocklist":
                return FakeResponse(409, reason="Conflict")
            return FakeResponse(201)

        http = FakeTransport(respond)
        uploader = make_uploader(b"x" * 8, shared_key_credentials, http, block_size=4)

        with pytest.raises(RequestRejected):
            uploader.run()
        assert uploader.state is UploadState.FAILED

    def test_source_read_failure(self, shared_key_credentials, fake_transport):
        uploader = make_uploader(
            FailingSource(good_reads=2), shared_key_credentials, fake_transport, block_size=4
        )

        with pytest.raises(SourceReadFailure, match="input/output error"):
            uploader.run()

        assert fake_transport.commit_requests() == []
        assert uploader.state is UploadState.FAILED

    def test_closed_source(self, shared_key_credentials, fake_transport):
        source = io.BytesIO(b"abc")
        source.close()
        uploader = make_uploader(source, shared_key_credentials, fake_transport)

        with pytest.raises(SourceReadFailure):
            uploader.run()

        assert fake_transport.requests == []
        assert uploader.state is UploadState.FAILED

    def test_run_twice(self, shared_key_credentials, fake_transport):
        uploader = make_uploader(b"abc", shared_key_credentials, fake_transport)
        uploader.run()
        with pytest.raises(InvalidArgument, match="already ran"):
            uploader.run()

    def test_rejects_invalid_destination(self, shared_key_credentials, fake_transport):
        with pytest.raises(InvalidArgument, match="not a valid resource name"):
            make_uploader(b"", shared_key_credentials, fake_transport, destination="nope")

    def test_rejects_invalid_credentials(self, fake_transport):
        with pytest.raises(InvalidArgument, match="Credentials"):
            StreamUploader(io.BytesIO(b""), "/backups/x", {"account": ACCOUNT})


class TestBackpressure:
    """Test the bound on blocks held in memory."""

    @pytest.mark.parametrize("concurrency", [1, 2, 4])
    def test_reads_wait_for_free_slot(self, shared_key_credentials, concurrency):
        completed = []
        in_flight = []
        peak = [0]
        lock = threading.Lock()

        def respond(request, index):
            with lock:
                in_flight.append(index)
                peak[0] = max(peak[0], len(in_flight))
            threading.Event().wait(0.005)
            with lock:
                in_flight.remove(index)
                if FakeTransport.query(request)["comp"] == "block":
                    completed.append(index)
            return FakeResponse(201)

        block_size = 4
        source = CountingSource(b"q" * 80, concurrency, completed)
        http = FakeTransport(respond)

        urls = make_uploader(
            source, shared_key_credentials, http, block_size=block_size, concurrency=concurrency
        ).run()

        assert urls == [f"{BASE}/backups/archive.tar.000"]
        assert source.blocks_read == 20
        assert source.violations == []
        assert peak[0] <= concurrency

    def test_transport_opened_and_closed(self, shared_key_credentials, fake_transport):
        make_uploader(b"abc", shared_key_credentials, fake_transport).run()
        assert fake_transport.opened
        assert fake_transport.closed


def test_upload_stream(monkeypatch, sas_credentials):
    http = FakeTransport()
    monkeypatch.setattr("azstream.transport.RequestsTransport", lambda **kwargs: http)

    urls = upload_stream(
        io.BytesIO(b"hello"), "/backups/hello.txt", sas_credentials,
        UploadConfiguration(single_blob=True),
    )

    assert urls == [f"{BASE}/backups/hello.txt"]
    [commit] = http.commit_requests()
    assert commit.headers["x-ms-blob-content-type"] == "text/plain"
    assert "Authorization" not in commit.headers
