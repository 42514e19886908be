"""Shared test fixtures and utilities."""

import base64
import threading
import urllib.parse

import pytest

from azstream.config import Credentials

ACCOUNT = "testaccount"
ACCOUNT_KEY = base64.b64encode(b"0123456789abcdef" * 4).decode("ascii")
SAS_TOKEN = "?sv=2019-02-02&ss=b&srt=o&sp=wc&se=2030-01-01T00%3A00%3A00Z&sig=abc%2Fdef%3D"


class FakeResponse:
    def __init__(self, status_code=201, body="", reason=None):
        self.status_code = status_code
        self.reason = reason
        self._body = body

    def text(self):
        return self._body


class FakeTransport:
    """Records every request and answers through ``responder``.

    ``responder(request, attempt_index)`` returns a FakeResponse or raises;
    by default every request succeeds with 201.
    """

    def __init__(self, responder=None):
        self.responder = responder
        self.requests = []
        self.opened = False
        self.closed = False
        self._lock = threading.Lock()

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def send(self, request):
        with self._lock:
            index = len(self.requests)
            self.requests.append(request)
        if self.responder is None:
            return FakeResponse(201)
        return self.responder(request, index)

    # Helpers for assertions

    @staticmethod
    def query(request):
        return dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(request.url).query))

    @staticmethod
    def path(request):
        return urllib.parse.urlsplit(request.url).path

    def block_requests(self):
        return [r for r in self.requests if self.query(r).get("comp") == "block"]

    def commit_requests(self):
        return [r for r in self.requests if self.query(r).get("comp") == "blocklist"]


@pytest.fixture
def shared_key_credentials():
    return Credentials(ACCOUNT, access_key=ACCOUNT_KEY)


@pytest.fixture
def sas_credentials():
    return Credentials(ACCOUNT, sas_token=SAS_TOKEN)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def no_sleep(monkeypatch):
    """Replace the retry backoff sleep and record the requested delays."""
    delays = []
    monkeypatch.setattr("azstream.transport.time.sleep", delays.append)
    return delays


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Drop storage-related environment variables and leave the repo cwd."""
    for name in (
        "AZURE_STORAGE_ACCOUNT",
        "AZURE_STORAGE_ACCESS_KEY",
        "AZURE_STORAGE_SAS_TOKEN",
        "AZURE_STORAGE_CONNECTION_STRING",
        "AZURE_STORAGE_ENDPOINT",
        "BLOCK_SIZE_MB",
        "BLOCKS_PER_BLOB",
        "CONCURRENCY",
        "RETRY_BASE_DELAY",
        "DEBUG",
        "LOG_PATH",
    ):
        # setenv first so variables set later by load_dotenv are undone too
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return monkeypatch
