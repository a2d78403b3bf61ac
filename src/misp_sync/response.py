"""
Sync Response - Lazy content decoding and strict JSON parsing

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/response.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Core Implementation

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Request/response value types. Responses are
                                decompressed once and JSON-decoded once, both
                                memoized per instance.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
import gzip
import json
import logging
import zlib

import brotli
from requests.structures import CaseInsensitiveDict

from .exceptions import DecodeFailure, JsonDecodeFailure, UnsupportedEncoding

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class SyncRequest:
    """Outgoing request as built by the sync client. Not retained after the call."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    content_encoding: Optional[str] = None


class SyncResponse:
    """
    Wraps a raw HTTP response.

    The decoded body and the parsed JSON are computed on first access and
    cached, including failures, so repeated inspection never decompresses
    or parses twice and always raises the same error.
    """

    def __init__(
        self,
        status_code: int,
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        url: str = "",
    ):
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.raw_body = body or b""
        self.url = url
        self._decoded: Any = _UNSET
        self._json: Any = _UNSET
        self._decode_error: Optional[Exception] = None
        self._json_error: Optional[Exception] = None

    def __repr__(self) -> str:
        return f"<SyncResponse [{self.status_code}] {self.url}>"

    @property
    def code(self) -> int:
        return self.status_code

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup"""
        return self.headers.get(name, default)

    def is_ok(self) -> bool:
        """True for any 2xx status code"""
        return 200 <= self.status_code < 300

    def decoded_body(self) -> bytes:
        """
        Body with Content-Encoding removed.

        Returns:
            Decompressed body bytes

        Raises:
            UnsupportedEncoding: Encoding other than gzip or br
            DecodeFailure: Body could not be decompressed
        """
        if self._decode_error is not None:
            raise self._decode_error
        if self._decoded is _UNSET:
            try:
                self._decoded = self._decode_content()
            except (UnsupportedEncoding, DecodeFailure) as e:
                self._decode_error = e
                raise
        return self._decoded

    def _decode_content(self) -> bytes:
        encoding = (self.get_header("Content-Encoding") or "").strip().lower()
        if not encoding:
            return self.raw_body

        if encoding == "gzip":
            try:
                return gzip.decompress(self.raw_body)
            except (OSError, EOFError, zlib.error) as e:
                raise DecodeFailure(
                    "Response should be gzip encoded, but gzip decoding failed.",
                    url=self.url,
                    response=self,
                    cause=e,
                ) from e

        if encoding == "br":
            try:
                return brotli.decompress(self.raw_body)
            except brotli.error as e:
                raise DecodeFailure(
                    "Response should be brotli encoded, but brotli decoding failed.",
                    url=self.url,
                    response=self,
                    cause=e,
                ) from e

        raise UnsupportedEncoding(encoding, url=self.url, response=self)

    @property
    def text(self) -> str:
        """
        Decoded body as UTF-8 text.

        Raises:
            DecodeFailure: Body is not valid UTF-8
        """
        body = self.decoded_body()
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeFailure(
                "Response body is not valid UTF-8.", url=self.url, response=self, cause=e
            ) from e

    def json(self) -> Any:
        """
        Decode the body as JSON.

        A literal ``null`` payload decodes to None; only malformed input
        raises.

        Raises:
            JsonDecodeFailure: Body is not valid JSON
            UnsupportedEncoding: See decoded_body()
            DecodeFailure: See decoded_body()
        """
        if self._json_error is not None:
            raise self._json_error
        if self._json is _UNSET:
            body = self.decoded_body()
            try:
                self._json = json.loads(body)
            except ValueError as e:
                self._json_error = JsonDecodeFailure(
                    "Could not parse response as JSON.",
                    url=self.url,
                    response=self,
                    cause=e,
                )
                raise self._json_error from e
        return self._json
