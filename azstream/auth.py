"""Request signing for Azure Blob Storage.

A ``RequestSigner`` covers exactly one outbound request: it captures the
timestamp when it is created, so build a new one for every attempt.

Two modes are supported and never mixed:

* shared key: an HMAC-SHA256 over a canonical string, sent in the
  ``Authorization`` header using the SharedKeyLite scheme;
* SAS token: the token's query parameters authorize the request and no
  signature is computed.
"""

import base64
import hashlib
import hmac
import re
import urllib.parse
from email.utils import formatdate
from typing import Dict, Mapping, Optional

from .errors import InvalidArgument, NotConfigured

AUTH_SCHEME = "SharedKeyLite"
API_VERSION = "2016-05-31"

_CUSTOM_HEADER_RE = re.compile(r"^x-ms-", re.IGNORECASE)
_BUILTIN_HEADERS = ("x-ms-date", "x-ms-version")
_NEWLINES_RE = re.compile(r"[\r\n]")


def _sorted(mapping: Mapping[str, str]) -> Dict[str, str]:
    return {k: mapping[k] for k in sorted(mapping)}


def parse_sas_token(token: str) -> Dict[str, str]:
    """Parse a SAS token (with or without leading ``?``) into parameters."""
    return dict(urllib.parse.parse_qsl(token.lstrip("?&"), keep_blank_values=True))


class RequestSigner:
    """Builds authorization material for one request.

    Args:
        verb: HTTP verb, e.g. ``PUT``
        resource_path: URL path of the resource, starting with ``/``
        content_md5: Value for the Content-MD5 header (optional)
        content_type: Value for the Content-Type header (optional)
        query: Extra query parameters for the request URL (optional)
        date: Fixed value for ``x-ms-date``; defaults to now
    """

    def __init__(
        self,
        verb: str,
        resource_path: str,
        content_md5: Optional[str] = None,
        content_type: Optional[str] = None,
        query: Optional[Mapping[str, str]] = None,
        date: Optional[str] = None,
    ):
        if not isinstance(resource_path, str) or not resource_path.startswith("/"):
            raise InvalidArgument("Resource path must be a string starting with /")

        self.verb = verb.upper()
        self.resource_path = resource_path
        self.content_md5 = content_md5 or None
        self.content_type = content_type or None
        self.query = dict(query or {})
        self.date = date or formatdate(usegmt=True)

        self._custom_headers: Dict[str, str] = {}
        self._account_name: Optional[str] = None
        self._account_key: Optional[str] = None
        self._sas_params: Optional[Dict[str, str]] = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def add_header(self, name: str, value: str) -> None:
        """Add a custom ``x-ms-*`` header; names are stored lowercased."""
        if not name or not isinstance(name, str) or not isinstance(value, str) or not value:
            raise InvalidArgument("Header name and value must be non-empty strings")
        if not _CUSTOM_HEADER_RE.match(name):
            raise InvalidArgument(f'Header name "{name}" does not start with "x-ms-"')
        lowered = name.lower()
        if lowered in _BUILTIN_HEADERS:
            raise InvalidArgument(f'Header "{lowered}" is set by the signer and cannot be overridden')
        self._custom_headers[lowered] = value

    def set_credentials(
        self,
        account_name: str,
        key: Optional[str] = None,
        sas_token: Optional[str] = None,
    ) -> None:
        if not account_name or not isinstance(account_name, str):
            raise InvalidArgument("Storage account name must be a non-empty string")
        if bool(key) == bool(sas_token):
            raise InvalidArgument("Exactly one of key and sasToken must be set")

        self._account_name = account_name
        if key:
            self._account_key = key
            self._sas_params = None
        else:
            self._account_key = None
            self._sas_params = parse_sas_token(sas_token)

    @property
    def uses_sas(self) -> bool:
        return self._sas_params is not None

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def headers(self) -> Dict[str, str]:
        """Built-in and custom headers, sorted by name."""
        merged = dict(self._custom_headers)
        merged["x-ms-date"] = self.date
        merged["x-ms-version"] = API_VERSION
        return _sorted(merged)

    def canonicalized_resource(self) -> str:
        resource = f"/{self._account_name}{self.resource_path}"
        if "comp" in self.query:
            resource += f"?comp={self.query['comp']}"
        return resource

    def string_to_sign(self) -> str:
        canonical_headers = "\n".join(
            name + ":" + _NEWLINES_RE.sub(" ", value)
            for name, value in self.headers().items()
        )
        return "\n".join([
            self.verb,
            self.content_md5 or "",
            self.content_type or "",
            "",  # date travels in x-ms-date
            canonical_headers,
            self.canonicalized_resource(),
        ])

    def signature(self) -> Optional[str]:
        """Base64 HMAC-SHA256 of the canonical string, or None with a SAS token."""
        if self._account_name is None:
            raise NotConfigured("You must set the storage account credentials")
        if self.uses_sas:
            return None

        mac = hmac.new(
            base64.b64decode(self._account_key),
            self.string_to_sign().encode("utf-8"),
            hashlib.sha256,
        )
        return base64.b64encode(mac.digest()).decode("ascii")

    def authorization_header_value(self) -> Optional[str]:
        signature = self.signature()
        if signature is None:
            return None
        return f"{AUTH_SCHEME} {self._account_name}:{signature}"

    def request_headers(self) -> Dict[str, str]:
        """Every header to send: built-ins, Authorization and content headers."""
        merged = self.headers()
        auth = self.authorization_header_value()
        if auth is not None:
            merged["Authorization"] = auth
        if self.content_md5:
            merged["Content-MD5"] = self.content_md5
        if self.content_type:
            merged["Content-Type"] = self.content_type
        return merged

    def query_parameters(self) -> Dict[str, str]:
        if self._account_name is None:
            raise NotConfigured("You must set the storage account credentials")
        if not self.uses_sas:
            return dict(self.query)
        params = dict(self._sas_params)
        params["api-version"] = API_VERSION
        params.update(self.query)
        return params
