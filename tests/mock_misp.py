"""
In-memory MISP peer used as the transport in tests

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: tests/mock_misp.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Test Utilities

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Route-table transport that records outgoing
                                requests and replays canned responses.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

import gzip
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import brotli

from misp_sync.transport import Transport, TransportResult

BASE_URL = "https://misp.example.com"


@dataclass
class RecordedRequest:
    """Request as seen by the peer"""
    method: str
    url: str
    path: str
    headers: Dict[str, str]
    body: Optional[bytes]
    timeout: Optional[float]

    def decoded_body(self) -> bytes:
        content_type = self.headers.get("Content-Type")
        if content_type == "application/x-gzip":
            return gzip.decompress(self.body)
        if content_type == "application/x-br":
            return brotli.decompress(self.body)
        return self.body or b""

    def json(self) -> Any:
        return json.loads(self.decoded_body())


class MockMISPPeer(Transport):
    """
    Transport answering from a route table.

    Each route holds a list of responses consumed in order; the last one is
    repeated for any further calls. Unknown routes answer 404.
    """

    def __init__(self, version_info: Optional[Dict[str, Any]] = None, base_url: str = BASE_URL):
        self.base_url = base_url
        self.routes: Dict[Tuple[str, str], List[TransportResult]] = {}
        self.requests: List[RecordedRequest] = []
        self.last_error: Optional[str] = None
        self.closed = False
        if version_info is not None:
            self.add_json("GET", "/servers/getVersion", version_info)

    def add(self, method: str, path: str, status: int = 200, body: bytes = b"",
            headers: Optional[Mapping[str, str]] = None) -> "MockMISPPeer":
        result = TransportResult(status_code=status, headers=dict(headers or {}), body=body)
        self.routes.setdefault((method, path), []).append(result)
        return self

    def add_json(self, method: str, path: str, payload: Any, status: int = 200,
                 headers: Optional[Mapping[str, str]] = None) -> "MockMISPPeer":
        all_headers = {"Content-Type": "application/json"}
        all_headers.update(headers or {})
        body = json.dumps(payload).encode("utf-8")
        return self.add(method, path, status=status, body=body, headers=all_headers)

    def request(self, method, url, headers, body=None, timeout=None):
        path = url[len(self.base_url):] if url.startswith(self.base_url) else url
        self.requests.append(RecordedRequest(method, url, path, dict(headers), body, timeout))

        queue = self.routes.get((method, path))
        if not queue:
            return TransportResult(status_code=404, headers={}, body=b"")
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    def close(self) -> None:
        self.closed = True

    def calls(self, method: Optional[str] = None, path: Optional[str] = None) -> List[RecordedRequest]:
        return [
            r for r in self.requests
            if (method is None or r.method == method) and (path is None or r.path == path)
        ]
