"""
HTTP Transport - Raw request execution for the sync client

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/transport.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Core Implementation

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Transport interface and requests-based
                                implementation returning raw, undecoded bodies.
2026-10-18  misp-sync   FIX     Send named array parameters with literal
                                brackets.
-------------------------------------------------------------------------------

License: MIT

The transport only moves bytes. Content decoding, status validation and
JSON handling are done by the sync client so that every transport behaves
the same way.
===============================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Union
import logging
import re

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.util.retry import Retry

from .config import ServerDescriptor
from .exceptions import TransportFailure

logger = logging.getLogger(__name__)


@dataclass
class TransportResult:
    """Status, headers and raw body bytes as received from the wire"""
    status_code: int
    headers: Mapping[str, str] = field(default_factory=CaseInsensitiveDict)
    body: bytes = b""


class Transport(ABC):
    """
    Abstract HTTP transport.

    Implementations must honour the timeout and raise TransportFailure for
    connection level problems (refused, DNS, TLS, timeout).
    """

    last_error: Optional[str] = None

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> TransportResult:
        """
        Execute a single request.

        Args:
            method: HTTP method (GET, POST, HEAD)
            url: Absolute URL
            headers: Request headers
            body: Optional request body
            timeout: Timeout in seconds

        Returns:
            TransportResult with the undecoded body
        """

    def close(self) -> None:
        """Release pooled connections"""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# =============================================================================
# Named Parameter Wire Format
# =============================================================================

_ENCODED_BRACKET = re.compile(r"%5([BbDd])")


def restore_brackets(target: str) -> str:
    """
    Undo percent-encoding of ``[`` and ``]`` in a request target.

    requests and urllib3 both escape brackets in paths, but MISP named array
    parameters (``/deleted[]=0``) must reach the peer literally.
    """
    return _ENCODED_BRACKET.sub(lambda m: "[" if m.group(1) in "Bb" else "]", target)


class _LiteralBracketPoolMixin:
    # Runs after urllib3 has encoded the target, right before it is written
    def _make_request(self, conn, method, url, *args, **kwargs):
        return super()._make_request(conn, method, restore_brackets(url), *args, **kwargs)


class LiteralBracketHTTPConnectionPool(_LiteralBracketPoolMixin, HTTPConnectionPool):
    pass


class LiteralBracketHTTPSConnectionPool(_LiteralBracketPoolMixin, HTTPSConnectionPool):
    pass


class NamedParamAdapter(HTTPAdapter):
    """HTTPAdapter whose connection pools send ``[]`` in paths unescaped"""

    POOL_CLASSES = {
        "http": LiteralBracketHTTPConnectionPool,
        "https": LiteralBracketHTTPSConnectionPool,
    }

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = dict(self.POOL_CLASSES)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        # SOCKS managers bring their own pool classes
        if not proxy.lower().startswith("socks"):
            manager.pool_classes_by_scheme = dict(self.POOL_CLASSES)
        return manager


class RequestsTransport(Transport):
    """
    Transport backed by a requests Session.

    Retries are limited to connection establishment; HTTP status codes are
    never retried here.
    """

    def __init__(
        self,
        verify_ssl: Union[bool, str] = True,
        client_cert: Optional[str] = None,
        proxies: Optional[Dict[str, str]] = None,
        max_retries: int = 0,
    ):
        self.verify_ssl = verify_ssl
        self.client_cert = client_cert
        self.proxies = proxies or {}
        self.max_retries = max_retries
        self.last_error: Optional[str] = None
        self._session = self._create_session()

    @classmethod
    def for_server(cls, server: ServerDescriptor, max_retries: int = 0) -> "RequestsTransport":
        """Create a transport configured with the TLS and proxy options of a server"""
        verify: Union[bool, str] = server.verify_ssl
        if server.verify_ssl and server.ca_bundle:
            verify = server.ca_bundle
        return cls(
            verify_ssl=verify,
            client_cert=server.client_cert,
            proxies=server.proxies,
            max_retries=max_retries,
        )

    def _create_session(self) -> requests.Session:
        """Create requests session with connection retry logic"""
        session = requests.Session()

        retry_strategy = Retry(
            total=self.max_retries,
            connect=self.max_retries,
            read=0,
            status=0,
            redirect=False,
            raise_on_status=False,
        )
        adapter = NamedParamAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        # Session defaults would otherwise leak into every request
        session.headers.clear()
        session.verify = self.verify_ssl
        if self.client_cert:
            session.cert = self.client_cert
        if self.proxies:
            session.proxies.update(self.proxies)

        return session

    def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> TransportResult:
        try:
            response = self._session.request(
                method,
                url,
                headers=dict(headers),
                data=body,
                timeout=timeout,
                stream=True,
                allow_redirects=False,
            )
        except requests.exceptions.RequestException as e:
            self.last_error = str(e)
            raise TransportFailure(f"Fetching the '{url}' failed: {e}", url=url, cause=e) from e

        try:
            # Undecoded bytes, Content-Encoding is handled by SyncResponse
            raw_body = response.raw.read(decode_content=False) if method != "HEAD" else b""
        except (requests.exceptions.RequestException, Urllib3HTTPError, OSError) as e:
            self.last_error = str(e)
            raise TransportFailure(f"Reading response from '{url}' failed: {e}", url=url, cause=e) from e
        finally:
            response.close()

        self.last_error = None
        return TransportResult(
            status_code=response.status_code or 0,
            headers=CaseInsensitiveDict(response.headers),
            body=raw_body or b"",
        )

    def close(self) -> None:
        self._session.close()
