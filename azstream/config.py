"""Upload settings, credentials and destination validation.

All values here are immutable and validated when they are built, so an
upload session never starts with a bad configuration.
"""

import base64
import binascii
import dataclasses
import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import InvalidArgument

MB = 1024 * 1024

# ---------------------------------------------------------------------------
# Limits and defaults
# ---------------------------------------------------------------------------

DEFAULT_BLOCK_SIZE = 20 * MB
MAX_BLOCK_SIZE = 100 * MB
MAX_BLOCKS_PER_BLOB = 50000
DEFAULT_CONCURRENCY = 3
DEFAULT_ENDPOINT = "blob.core.windows.net"

_DEFAULTS = {
    "MAX_ATTEMPTS": 3,
    "RETRY_BASE_DELAY": 2,
    "CONNECTION_TIMEOUT": 30,
    "READ_TIMEOUT": 120,
}

_ACCOUNT_RE = re.compile(r"^[a-z0-9]{3,24}$")
_ACCESS_KEY_RE = re.compile(
    r"^(?:[A-Za-z0-9+/]{4})*(?:[A-Za-z0-9+/]{2}==|[A-Za-z0-9+/]{3}=)?$"
)
_SAS_TOKEN_RE = re.compile(r"^(\?|&)?(\w+(=[\w\-%:.]*)?(&\w+(=[\w\-%:.]*)?)*)?$")
_DESTINATION_RE = re.compile(
    r"^/(\$root|[a-z0-9][a-z0-9-]{1,61}[a-z0-9])/(.{1,1024})$", re.DOTALL
)


@dataclass(frozen=True)
class UploadConfiguration:
    """Immutable per-upload settings."""

    block_size: int = DEFAULT_BLOCK_SIZE
    blocks_per_blob: int = MAX_BLOCKS_PER_BLOB
    concurrency: int = DEFAULT_CONCURRENCY
    verify_checksum: bool = True
    single_blob: bool = False
    endpoint: str = DEFAULT_ENDPOINT
    max_attempts: int = _DEFAULTS["MAX_ATTEMPTS"]
    retry_base_delay: float = _DEFAULTS["RETRY_BASE_DELAY"]
    connection_timeout: float = _DEFAULTS["CONNECTION_TIMEOUT"]
    read_timeout: float = _DEFAULTS["READ_TIMEOUT"]

    def __post_init__(self) -> None:
        if not _is_int(self.block_size) or not 1 <= self.block_size <= MAX_BLOCK_SIZE:
            raise InvalidArgument(
                f"Block size must be an integer between 1 and {MAX_BLOCK_SIZE} bytes, "
                f"got {self.block_size!r}"
            )
        if (not _is_int(self.blocks_per_blob)
                or not 1 <= self.blocks_per_blob <= MAX_BLOCKS_PER_BLOB):
            raise InvalidArgument(
                f"Blocks per blob must be an integer between 1 and {MAX_BLOCKS_PER_BLOB}, "
                f"got {self.blocks_per_blob!r}"
            )
        if not _is_int(self.concurrency) or self.concurrency < 1:
            raise InvalidArgument(
                f"Concurrency must be a positive integer, got {self.concurrency!r}"
            )
        if not isinstance(self.endpoint, str) or not self.endpoint.strip("."):
            raise InvalidArgument("Endpoint must be a non-empty host name")
        if not _is_int(self.max_attempts) or self.max_attempts < 1:
            raise InvalidArgument(
                f"Max attempts must be a positive integer, got {self.max_attempts!r}"
            )
        if (isinstance(self.retry_base_delay, bool)
                or not isinstance(self.retry_base_delay, (int, float))
                or self.retry_base_delay <= 0):
            raise InvalidArgument(
                f"Retry base delay must be a positive number of seconds, got {self.retry_base_delay!r}"
            )
        if self.connection_timeout <= 0 or self.read_timeout <= 0:
            raise InvalidArgument("Timeouts must be positive")

    @property
    def max_blob_bytes(self) -> int:
        """Largest input one blob sequence can hold."""
        return self.block_size * self.blocks_per_blob

    def with_overrides(self, **changes) -> "UploadConfiguration":
        """Return a new validated configuration with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "UploadConfiguration":
        """Build a configuration from environment variables.

        Recognised: BLOCK_SIZE_MB, BLOCKS_PER_BLOB, CONCURRENCY,
        RETRY_BASE_DELAY and AZURE_STORAGE_ENDPOINT, falling back to the
        EndpointSuffix of AZURE_STORAGE_CONNECTION_STRING for the endpoint.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        changes = {}
        try:
            if env.get("BLOCK_SIZE_MB"):
                changes["block_size"] = int(env["BLOCK_SIZE_MB"]) * MB
            if env.get("BLOCKS_PER_BLOB"):
                changes["blocks_per_blob"] = int(env["BLOCKS_PER_BLOB"])
            if env.get("CONCURRENCY"):
                changes["concurrency"] = int(env["CONCURRENCY"])
            if env.get("RETRY_BASE_DELAY"):
                changes["retry_base_delay"] = float(env["RETRY_BASE_DELAY"])
        except ValueError as exc:
            raise InvalidArgument(f"Invalid numeric setting in environment: {exc}") from exc
        endpoint = env.get("AZURE_STORAGE_ENDPOINT") or endpoint_from_env(env)
        if endpoint:
            changes["endpoint"] = endpoint
        return cls(**changes)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credentials:
    """Storage account name plus exactly one of a shared key or a SAS token."""

    account_name: str
    access_key: Optional[str] = None
    sas_token: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.account_name:
            raise InvalidArgument("Storage account name must be a non-empty string")
        if bool(self.access_key) == bool(self.sas_token):
            raise InvalidArgument(
                "Exactly one of storage account key or SAS token must be set"
            )

    @property
    def uses_shared_key(self) -> bool:
        return bool(self.access_key)

    def __repr__(self) -> str:
        mode = "shared-key" if self.uses_shared_key else "sas-token"
        return f"Credentials(account_name={self.account_name!r}, mode={mode})"


def valid_account_name(value: Optional[str]) -> bool:
    return bool(value) and bool(_ACCOUNT_RE.match(value))


def valid_access_key(value: Optional[str]) -> bool:
    """Access keys are base64; reject anything that does not decode."""
    if not value or not _ACCESS_KEY_RE.match(value):
        return False
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def valid_sas_token(value: Optional[str]) -> bool:
    return bool(value) and bool(_SAS_TOKEN_RE.match(value))


def parse_connection_string(conn_str: str) -> dict:
    """Split an Azure connection string into its ``key=value`` parts.

    Values keep their trailing ``=`` padding, which account keys rely on.
    """
    parts = {}
    for segment in conn_str.strip().split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise InvalidArgument(
                f"Malformed connection string: segment '{segment}' has no '=' separator"
            )
        key, _, value = segment.partition("=")
        parts[key.strip()] = value.strip()
    return parts


def resolve_credentials(
    explicit: Optional[Credentials] = None,
    account_name: Optional[str] = None,
    access_key: Optional[str] = None,
    sas_token: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Credentials:
    """Pick credentials: explicit object, then flags, then environment.

    The account name and the secret are resolved independently, each taking
    the first valid source. A connection string in
    AZURE_STORAGE_CONNECTION_STRING is the last resort for both.

    Raises:
        InvalidArgument: If no account name or no secret can be resolved
    """
    if explicit is not None:
        return explicit

    env = os.environ if environ is None else environ
    conn_parts = {}
    if env.get("AZURE_STORAGE_CONNECTION_STRING"):
        conn_parts = parse_connection_string(env["AZURE_STORAGE_CONNECTION_STRING"])

    name = None
    for candidate in (account_name, env.get("AZURE_STORAGE_ACCOUNT"), conn_parts.get("AccountName")):
        if valid_account_name(candidate):
            name = candidate
            break
    if name is None:
        raise InvalidArgument(
            "Storage account name not set or invalid. Set --storage-account or "
            "the environment variable AZURE_STORAGE_ACCOUNT."
        )

    if valid_access_key(access_key):
        return Credentials(name, access_key=access_key)
    if valid_sas_token(sas_token):
        return Credentials(name, sas_token=sas_token)
    if valid_access_key(env.get("AZURE_STORAGE_ACCESS_KEY")):
        return Credentials(name, access_key=env["AZURE_STORAGE_ACCESS_KEY"])
    if valid_sas_token(env.get("AZURE_STORAGE_SAS_TOKEN")):
        return Credentials(name, sas_token=env["AZURE_STORAGE_SAS_TOKEN"])
    if valid_access_key(conn_parts.get("AccountKey")):
        return Credentials(name, access_key=conn_parts["AccountKey"])

    raise InvalidArgument(
        "Storage account key or SAS token not set or invalid. Set --access-key or "
        "--sas-token, or the environment variables AZURE_STORAGE_ACCESS_KEY or "
        "AZURE_STORAGE_SAS_TOKEN."
    )


def endpoint_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Endpoint suffix carried by a connection string, if any."""
    env = os.environ if environ is None else environ
    conn_str = env.get("AZURE_STORAGE_CONNECTION_STRING")
    if not conn_str:
        return None
    suffix = parse_connection_string(conn_str).get("EndpointSuffix")
    return f"blob.{suffix}" if suffix else None


# ---------------------------------------------------------------------------
# Destination
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DestinationPath:
    """Validated ``/<container>/<path>`` resource identifier."""

    container: str
    blob_name: str

    @classmethod
    def parse(cls, value: str) -> "DestinationPath":
        if not isinstance(value, str):
            raise InvalidArgument("Destination path must be a string")
        match = _DESTINATION_RE.match(value)
        if not match:
            raise InvalidArgument(
                f"{value} is not a valid resource name for a blob. "
                f"Path must be in the format /container/path/to/file"
            )
        return cls(container=match.group(1), blob_name=match.group(2))

    @property
    def resource(self) -> str:
        return f"/{self.container}/{self.blob_name}"

    def __str__(self) -> str:
        return self.resource
