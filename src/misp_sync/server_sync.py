"""
Server Sync Client - Version-aware REST client for MISP peers

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/server_sync.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Core Implementation

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Sync client facade: request construction,
                                request compression, response validation,
                                capability gating and the event, sighting,
                                proposal and galaxy cluster operations.
-------------------------------------------------------------------------------

License: MIT

PURPOSE:
Synchronizes events, sightings, proposals and galaxy clusters with a remote
MISP instance. Peers may run older releases, so optional endpoints and
request compression are only used after the peer's version descriptor has
been checked.
===============================================================================
"""

from types import MappingProxyType
from typing import Any, Dict, Generator, Iterable, List, Mapping, Optional, Union
import gzip
import json
import logging

import brotli

from .audit import SyncAuditLog
from .capabilities import (
    CapabilityCache,
    VersionInfo,
    FEATURE_BROTLI_REQUESTS,
    FEATURE_CHECK_UUID,
    FEATURE_GALAXY_CLUSTER_EDIT,
    FEATURE_GZIP_REQUESTS,
    FEATURE_ORG_RULE_AS_ARRAY,
    FEATURE_POST_TEST,
    FEATURE_PROPOSALS,
    FEATURE_PUSH,
    FEATURE_SIGHTINGS_FILTER,
)
from .config import ClientIdentity, ServerDescriptor, SyncSettings
from .exceptions import (
    HttpError,
    InvalidArgument,
    InvalidConfiguration,
    RequestFailed,
    SyncError,
    TransportFailure,
    UnexpectedResponseShape,
)
from .response import SyncRequest, SyncResponse
from .transport import RequestsTransport, Transport

logger = logging.getLogger(__name__)

AUTHKEY_PREFIX = "Authkey updated: "
AUTHKEY_LENGTH = 40

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_GZIP = "application/x-gzip"
CONTENT_TYPE_BROTLI = "application/x-br"

RequestBody = Union[bytes, str, Dict[str, Any], List[Any], None]


class ServerSync:
    """
    Synchronization client for one remote server.

    Every request goes through the same pipeline: URL construction, optional
    body compression, transport, response validation. Operations raise
    SyncError subclasses and never retry.

    Usage:
        server = ServerDescriptor(id=1, url="https://misp.example.com", authkey=key)
        with ServerSync(server, ClientIdentity((2, 4, 150))) as sync:
            if sync.is_supported(ServerSync.FEATURE_PUSH):
                sync.push_event(event)
    """

    FEATURE_PROPOSALS = FEATURE_PROPOSALS
    FEATURE_CHECK_UUID = FEATURE_CHECK_UUID
    FEATURE_GALAXY_CLUSTER_EDIT = FEATURE_GALAXY_CLUSTER_EDIT
    FEATURE_PUSH = FEATURE_PUSH
    FEATURE_ORG_RULE_AS_ARRAY = FEATURE_ORG_RULE_AS_ARRAY
    FEATURE_SIGHTINGS_FILTER = FEATURE_SIGHTINGS_FILTER
    FEATURE_GZIP_REQUESTS = FEATURE_GZIP_REQUESTS
    FEATURE_BROTLI_REQUESTS = FEATURE_BROTLI_REQUESTS
    FEATURE_POST_TEST = FEATURE_POST_TEST

    def __init__(
        self,
        server: ServerDescriptor,
        client: ClientIdentity,
        settings: Optional[SyncSettings] = None,
        transport: Optional[Transport] = None,
        audit: Optional[SyncAuditLog] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the client. No network activity happens here.

        Args:
            server: Remote server descriptor, must carry a numeric id
            client: Local version and commit used for outbound headers
            settings: Client settings, defaults to SyncSettings()
            transport: Transport override, defaults to RequestsTransport
            audit: Audit sink override, defaults to one built from settings
            timeout: Per-request timeout override in seconds

        Raises:
            InvalidConfiguration: Missing or non-numeric server id, missing URL, bad timeout
        """
        if server is None or server.id is None or server.id == "":
            raise InvalidConfiguration("Invalid server descriptor provided, id is missing.")
        if isinstance(server.id, bool) or not str(server.id).strip().isdigit():
            raise InvalidConfiguration(f"Server id must be numeric, got {server.id!r}")
        if not server.url:
            raise InvalidConfiguration(f"Server #{server.id} has no URL configured.")

        self.settings = settings or SyncSettings()
        self.timeout = self.settings.timeout if timeout is None else timeout
        if self.timeout <= 0:
            raise InvalidConfiguration(f"Timeout must be positive, got {self.timeout!r}")

        self._server = server
        self._client = client

        headers = {
            "Authorization": server.authkey,
            "Accept": CONTENT_TYPE_JSON,
            "MISP-version": client.version_string,
            "User-Agent": client.user_agent,
        }
        if client.commit:
            headers["commit"] = client.commit
        if self.settings.accept_encoding:
            headers["Accept-Encoding"] = self.settings.accept_encoding
        self._default_headers = MappingProxyType(headers)

        self._owns_transport = transport is None
        self._transport = transport or RequestsTransport.for_server(server, self.settings.max_retries)
        self._audit = audit or SyncAuditLog(self.settings.sync_audit, self.settings.audit_dir)
        self._capabilities = CapabilityCache(self._fetch_version)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Close the transport if this client created it"""
        if self._owns_transport:
            self._transport.close()

    @property
    def server(self) -> ServerDescriptor:
        return self._server

    @property
    def server_id(self) -> int:
        return self._server.id

    @property
    def default_headers(self) -> Mapping[str, str]:
        return self._default_headers

    # =========================================================================
    # Capabilities
    # =========================================================================

    def get_version(self) -> VersionInfo:
        """Remote version descriptor, fetched once per client"""
        return self._capabilities.version()

    def is_supported(self, feature: str) -> bool:
        """
        Check if the remote server supports a feature.

        Args:
            feature: One of the FEATURE_* constants

        Raises:
            InvalidFeature: Unknown feature name
            SyncError: Fetching the version descriptor failed
        """
        return self._capabilities.is_supported(feature)

    def _fetch_version(self) -> VersionInfo:
        response = self.get("/servers/getVersion")
        info = VersionInfo.from_response(response.json(), url=response.url, response=response)
        logger.info(f"Server #{self.server_id} runs MISP {info.version}")
        return info

    # =========================================================================
    # Request Pipeline
    # =========================================================================

    def construct_url(self, path: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """
        Build an absolute URL with MISP named parameters.

        Parameters are appended as path segments, ``/key=value`` for scalars
        and ``/key[]=value`` per element for lists, not as a query string.
        """
        url = self._server.url + path
        for key, value in (params or {}).items():
            if isinstance(value, (list, tuple)):
                for item in value:
                    url += f"/{key}[]={_param_value(item)}"
            else:
                url += f"/{key}={_param_value(value)}"
        return url

    @staticmethod
    def encode(content: Any) -> bytes:
        """
        Encode content as UTF-8 JSON, keeping non-ASCII characters unescaped.

        Raises:
            InvalidArgument: Content is not JSON serializable
        """
        try:
            return json.dumps(content, ensure_ascii=False, allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise InvalidArgument(f"Could not encode request as JSON: {e}", cause=e) from e

    def get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> SyncResponse:
        """GET request, validated"""
        url = self.construct_url(path, params)
        request = SyncRequest(method="GET", url=url, headers=dict(self._default_headers))
        return self.validate_response(url, self._send(request))

    def post(self, path: str, data: RequestBody = None) -> SyncResponse:
        """
        POST request, validated.

        Bodies above the compression threshold are compressed when the peer
        accepts it, preferring Brotli over gzip.

        Args:
            path: Path relative to the server URL
            data: Pre-encoded JSON text, or a structure to encode
        """
        if isinstance(data, (dict, list)):
            data = self.encode(data)
        elif isinstance(data, str):
            data = data.encode("utf-8")
        body = data or b""

        headers = dict(self._default_headers)
        encoding = None
        if len(body) > self.settings.compression_threshold:
            encoding = self._request_encoding()

        level = self.settings.compression_level
        if encoding == "br":
            body = brotli.compress(body, quality=level)
            headers["Content-Type"] = CONTENT_TYPE_BROTLI
        elif encoding == "gzip":
            body = gzip.compress(body, compresslevel=level)
            headers["Content-Type"] = CONTENT_TYPE_GZIP
        else:
            headers["Content-Type"] = CONTENT_TYPE_JSON

        url = self.construct_url(path)
        request = SyncRequest(method="POST", url=url, headers=headers, body=body, content_encoding=encoding)
        return self.validate_response(url, self._send(request))

    def head(self, path: str) -> bool:
        """
        HEAD request.

        Returns:
            True for 200, False for 404

        Raises:
            RequestFailed: Any other outcome, including transport failures
        """
        url = self.construct_url(path)
        request = SyncRequest(method="HEAD", url=url, headers=dict(self._default_headers))
        try:
            response = self._send(request)
            if response is not None and response.status_code == 200:
                return True
            if response is not None and response.status_code == 404:
                return False
            self.validate_response(url, response)
        except (TransportFailure, HttpError) as e:
            status = getattr(e, "status_code", 0)
            raise RequestFailed(
                f"Invalid HTTP code for '{url}', expected 200 or 404, {status} given.",
                status_code=status,
                url=url,
                reason=getattr(e, "reason", None),
                response=e.response,
                cause=e,
            ) from e

        raise RequestFailed(
            f"Invalid HTTP code for '{url}', expected 200 or 404, {response.status_code} given.",
            status_code=response.status_code,
            url=url,
            response=response,
        )

    def validate_response(self, url: str, response: Optional[SyncResponse]) -> SyncResponse:
        """
        Raise for transport and HTTP level failures.

        Raises:
            TransportFailure: No response, or status code 0
            HttpError: Non-2xx status, with the server's ``errors`` as reason
        """
        if response is None:
            raise TransportFailure(f"Could not reach '{url}'.", url=url)

        if response.status_code == 0:
            last_error = getattr(self._transport, "last_error", None)
            if last_error:
                message = f"Fetching the '{url}' failed: {last_error}"
            else:
                message = f"Fetching the '{url}' failed with unknown error."
            raise TransportFailure(message, url=url, response=response)

        if not response.is_ok():
            reason = _error_reason(response)
            message = f"Fetching the '{url}' failed with HTTP error {response.status_code}."
            if reason:
                message += f"\nReason: '{reason}'"
            raise HttpError(message, status_code=response.status_code, url=url, reason=reason, response=response)

        return response

    def _send(self, request: SyncRequest) -> Optional[SyncResponse]:
        logger.debug(
            f"{request.method} {request.url} "
            f"({request.headers.get('Content-Type', '-')}, {len(request.body or b'')} bytes)"
        )
        result = self._transport.request(
            request.method,
            request.url,
            request.headers,
            body=request.body,
            timeout=self.timeout,
        )
        if result is None:
            return None
        return SyncResponse(result.status_code, result.headers, result.body, url=request.url)

    def _request_encoding(self) -> Optional[str]:
        if self.is_supported(FEATURE_BROTLI_REQUESTS):
            return "br"
        if self.is_supported(FEATURE_GZIP_REQUESTS):
            return "gzip"
        return None

    def _audit_push(self, title: str, data: bytes) -> None:
        try:
            self._audit.record(self.server_id, title, data)
        except Exception as e:
            logger.warning(f"Sync audit failed for server #{self.server_id}: {e}")

    # =========================================================================
    # Server & User
    # =========================================================================

    def get_remote_user(self) -> Dict[str, Any]:
        return self.get("/users/view/me.json").json()

    def reset_auth_key(self) -> str:
        """
        Ask the remote server to rotate the key used by this client.

        Returns:
            The new 40 character auth key
        """
        response = self.post("/users/resetauthkey/me")
        data = response.json()
        if not isinstance(data, dict) or "message" not in data:
            raise UnexpectedResponseShape(
                "Response key 'message' is missing.", field="message", url=response.url, response=response
            )
        message = data["message"]
        if not isinstance(message, str) or not message.startswith(AUTHKEY_PREFIX):
            raise UnexpectedResponseShape(
                "Message doesn't contain 'Authkey updated' string.",
                field="message",
                problem="invalid",
                url=response.url,
                response=response,
            )
        start = len(AUTHKEY_PREFIX)
        return message[start:start + AUTHKEY_LENGTH]

    def post_test(self, test_string: str) -> Any:
        """Round-trip a test string through ``/servers/postTest``"""
        return self.post("/servers/postTest", self.encode({"testString": test_string})).json()

    # =========================================================================
    # Events
    # =========================================================================

    def event_exists(self, event_uuid: str) -> bool:
        """Check if an event exists on the remote server"""
        if not self.is_supported(FEATURE_CHECK_UUID):
            return self.head(f"/events/view/{event_uuid}")

        response = self.get(f"/events/checkuuid/{event_uuid}")
        data = response.json()
        if not isinstance(data, dict) or "exists" not in data:
            raise UnexpectedResponseShape(
                "Response JSON doesn't contain 'exists' field.", field="exists", url=response.url, response=response
            )
        if not isinstance(data["exists"], bool):
            raise UnexpectedResponseShape(
                "Response JSON 'exists' field is not boolean.",
                field="exists",
                problem="invalid",
                url=response.url,
                response=response,
            )
        return data["exists"]

    def event(self, event_id: Union[int, str], params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Fetch an event by id or UUID"""
        return self.get(f"/events/view/{event_id}", params).json()

    def event_index(self, filter_rules: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return self.post("/events/index", self.encode(dict(filter_rules))).json()

    def filter_event_ids_for_push(self, events: Iterable[Mapping[str, Any]]) -> List[str]:
        """
        Ask the remote server which events it still needs.

        Only UUID and timestamp of each event are sent.
        """
        only_required = []
        for event in events:
            try:
                only_required.append({"Event": {
                    "uuid": event["Event"]["uuid"],
                    "timestamp": event["Event"]["timestamp"],
                }})
            except (KeyError, TypeError) as e:
                raise InvalidArgument(f"Event is missing uuid or timestamp: {e}", cause=e) from e

        return self.post("/events/filterEventIdsForPush", self.encode(only_required)).json()

    def push_event(self, event: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Create or update an event on the remote server.

        The existence check and the push are separate requests; a concurrent
        change on the remote side is resolved by retrying the push.
        """
        event_uuid = (event.get("Event") or {}).get("uuid") if isinstance(event, Mapping) else None
        if not event_uuid:
            raise InvalidArgument("Passed event doesn't contain UUID.")

        data = self.encode(event)
        self._audit_push(f"Pushing Event #{event_uuid}", data)

        if not self.event_exists(event_uuid):
            logger.info(f"Creating event {event_uuid} on server #{self.server_id}")
            return self.post("/events/add/metadata:1", data).json()

        logger.info(f"Updating event {event_uuid} on server #{self.server_id}")
        return self.post(f"/events/edit/{event_uuid}/metadata:1", data).json()

    def attribute_cache(self, chunk_size: int = 1000) -> Generator[List[str], None, None]:
        """
        Page through the remote attribute cache.

        Yields one list of cache lines per page and stops after the first
        page shorter than ``chunk_size``. Each iteration of a new generator
        starts again from page 1.
        """
        if chunk_size <= 0:
            raise InvalidArgument(f"Chunk size must be positive, got {chunk_size}")

        rules = {
            "returnFormat": "cache",
            "includeEventUuid": 1,
            "limit": chunk_size,
        }

        page = 1
        while True:
            rules["page"] = page
            logger.debug(f"Fetching attribute cache page {page} from server #{self.server_id}")
            response = self.post("/attributes/restSearch.json", self.encode(rules))
            lines = response.text.strip().splitlines()
            if not lines:
                return
            yield lines
            if len(lines) < chunk_size:
                return
            page += 1

    # =========================================================================
    # Sightings
    # =========================================================================

    def filter_sightings_for_push(self, sightings: Iterable[Mapping[str, Any]]) -> List[str]:
        """Return the sighting UUIDs the remote server does not have yet"""
        uuids = [sighting["uuid"] for sighting in sightings if "uuid" in sighting]
        return self.post("/sightings/filterSightingsForPush", self.encode(uuids)).json()

    def push_sightings(self, event_id: Union[int, str], sightings: List[Mapping[str, Any]]) -> Dict[str, Any]:
        data = self.encode(sightings)
        self._audit_push(f"Pushing Sightings for Event #{event_id}", data)
        result = self.post(f"/sightings/bulkSaveSightings/{event_id}", data).json()
        logger.info(f"Pushed {len(sightings)} sightings for event {event_id} to server #{self.server_id}")
        return result

    def pull_sightings(self, event_id: Union[int, str]) -> List[Dict[str, Any]]:
        """All sightings of an event, from plain and object attributes, in order"""
        event = self.event(event_id, {
            "includeAttachments": 0,
            "deleted": [0, 1],
            "excludeGalaxy": 1,
        })
        event = (event or {}).get("Event") or {}

        sightings = []
        for attribute in event.get("Attribute") or []:
            sightings.extend(attribute.get("Sighting") or [])
        for obj in event.get("Object") or []:
            for attribute in obj.get("Attribute") or []:
                sightings.extend(attribute.get("Sighting") or [])
        return sightings

    # =========================================================================
    # Proposals
    # =========================================================================

    def push_proposals(self, event_id: Union[int, str], shadow_attributes: List[Mapping[str, Any]]) -> Dict[str, Any]:
        data = self.encode(shadow_attributes)
        self._audit_push(f"Pushing Proposals for Event #{event_id}", data)
        result = self.post(f"/events/pushProposals/{event_id}", data).json()
        logger.info(f"Pushed {len(shadow_attributes)} proposals for event {event_id} to server #{self.server_id}")
        return result

    def pull_proposals(self, timestamp: int, chunk_size: int = 1000) -> Generator[Dict[str, Any], None, None]:
        """
        Page through proposals changed since ``timestamp``.

        Yields individual proposal records and stops after the first page
        shorter than ``chunk_size``. Each iteration of a new generator starts
        again from page 1.
        """
        if chunk_size <= 0:
            raise InvalidArgument(f"Chunk size must be positive, got {chunk_size}")

        page = 1
        while True:
            path = (
                f"/shadow_attributes/index/all:1/timestamp:{timestamp}/limit:{chunk_size}"
                f"/page:{page}/deleted[]:0/deleted[]:1.json"
            )
            logger.debug(f"Fetching proposals page {page} from server #{self.server_id}")
            response = self.get(path)
            proposals = response.json()
            if not proposals:
                return
            if not isinstance(proposals, list):
                raise UnexpectedResponseShape(
                    "Proposal index should be a JSON array.",
                    field="proposals",
                    problem="invalid",
                    url=response.url,
                    response=response,
                )
            for proposal in proposals:
                yield proposal
            if len(proposals) < chunk_size:
                return
            page += 1

    # =========================================================================
    # Galaxy Clusters
    # =========================================================================

    def galaxy_cluster(self, cluster_id: Union[int, str]) -> Dict[str, Any]:
        return self.get(f"/galaxy_clusters/view/{cluster_id}").json()

    def galaxy_cluster_search(self, rules: Mapping[str, Any]) -> List[Dict[str, Any]]:
        response = self.post("/galaxy_clusters/restSearch", self.encode(dict(rules)))
        data = response.json()
        if not isinstance(data, dict) or "response" not in data:
            raise UnexpectedResponseShape(
                "Response JSON doesn't contain 'response' field.", field="response", url=response.url, response=response
            )
        return data["response"]

    def push_galaxy_cluster(self, cluster: Mapping[str, Any]) -> Dict[str, Any]:
        cluster_id = (cluster.get("GalaxyCluster") or {}).get("id") if isinstance(cluster, Mapping) else None
        if cluster_id is None:
            raise InvalidArgument("Invalid galaxy cluster provided.")

        data = self.encode(cluster)
        self._audit_push(f"Pushing Galaxy Cluster #{cluster_id}", data)
        return self.post("/galaxies/pushCluster", data).json()


def _param_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _error_reason(response: SyncResponse) -> Optional[str]:
    """Best-effort ``errors`` field of an error body"""
    try:
        data = response.json()
    except SyncError as e:
        logger.debug(f"Error response from {response.url} is not JSON: {e}")
        return None
    if isinstance(data, dict) and data.get("errors"):
        errors = data["errors"]
        if isinstance(errors, str):
            return errors
        return json.dumps(errors, ensure_ascii=False)
    return None
