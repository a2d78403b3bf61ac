"""
Capability Negotiation - Remote version cache and feature gating

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/capabilities.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Core Implementation

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Feature constants, version threshold table and
                                a lock-guarded, fetch-once version cache.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple
import logging
import operator
import threading

from .exceptions import InvalidFeature, UnexpectedResponseShape

logger = logging.getLogger(__name__)


# =============================================================================
# Feature Constants
# =============================================================================

FEATURE_PROPOSALS = "proposals"
FEATURE_CHECK_UUID = "checkuuid"
FEATURE_GALAXY_CLUSTER_EDIT = "supportEditOfGalaxyCluster"
FEATURE_PUSH = "push"
FEATURE_ORG_RULE_AS_ARRAY = "orgRuleAsArray"
FEATURE_SIGHTINGS_FILTER = "sightingsFilter"
FEATURE_GZIP_REQUESTS = "gzipRequests"
FEATURE_BROTLI_REQUESTS = "brotliRequests"
FEATURE_POST_TEST = "postTest"

# Version gated features, only defined for 2.4.x peers.
# feature -> (comparator, patch level)
VERSION_THRESHOLDS: Dict[str, Tuple[Callable[[int, int], bool], int]] = {
    FEATURE_PROPOSALS: (operator.ge, 111),
    FEATURE_CHECK_UUID: (operator.gt, 136),
    FEATURE_SIGHTINGS_FILTER: (operator.gt, 136),
    FEATURE_ORG_RULE_AS_ARRAY: (operator.gt, 123),
    FEATURE_POST_TEST: (operator.gt, 68),
}
REQUIRED_MAJOR = 2
REQUIRED_MINOR = 4

# Permission flags read straight from the version descriptor
FLAG_FEATURES: Dict[str, str] = {
    FEATURE_PUSH: "perm_sync",
    FEATURE_GALAXY_CLUSTER_EDIT: "perm_galaxy_editor",
}

# Request compression advertised in ``compressed_requests``
COMPRESSION_FEATURES: Dict[str, str] = {
    FEATURE_GZIP_REQUESTS: "gzip",
    FEATURE_BROTLI_REQUESTS: "br",
}

ALL_FEATURES = frozenset(VERSION_THRESHOLDS) | frozenset(FLAG_FEATURES) | frozenset(COMPRESSION_FEATURES)


# =============================================================================
# Version Descriptor
# =============================================================================

@dataclass(frozen=True)
class VersionInfo:
    """Self-reported descriptor of a remote peer (``/servers/getVersion``)"""
    version: str
    capabilities: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, info: Any, url: Optional[str] = None, response: Any = None) -> "VersionInfo":
        """
        Validate a decoded getVersion payload.

        Raises:
            UnexpectedResponseShape: ``version`` missing, or not a string
        """
        if not isinstance(info, dict) or "version" not in info:
            raise UnexpectedResponseShape(
                "Server returns JSON response, but doesn't contain required 'version' field. "
                "This may be because the remote server version is outdated.",
                field="version",
                problem="missing",
                url=url,
                response=response,
            )
        if not isinstance(info["version"], str):
            raise UnexpectedResponseShape(
                f"Server returns 'version' field of type {type(info['version']).__name__}, string expected.",
                field="version",
                problem="invalid",
                url=url,
                response=response,
            )
        return cls(version=info["version"], capabilities=dict(info))

    @property
    def version_tuple(self) -> Tuple[int, ...]:
        """
        Numeric version components.

        Non-numeric suffixes (``2.4.150-dev``) are ignored per component.
        """
        parts = []
        for part in self.version.split("."):
            digits = ""
            for char in part:
                if not char.isdigit():
                    break
                digits += char
            parts.append(int(digits) if digits else 0)
        return tuple(parts)

    @property
    def compressed_requests(self) -> Tuple[str, ...]:
        accepted = self.capabilities.get("compressed_requests")
        if isinstance(accepted, (list, tuple)):
            return tuple(str(value) for value in accepted)
        # Older peers only announce a gzip boolean
        if self.capabilities.get("gzip_requests"):
            return ("gzip",)
        return ()

    def get(self, key: str, default: Any = None) -> Any:
        return self.capabilities.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self.capabilities


# =============================================================================
# Capability Cache
# =============================================================================

class CapabilityCache:
    """
    Fetches the remote version descriptor at most once and answers feature
    support queries from it.

    The fetch callable is invoked under a lock so concurrent first callers
    share a single fetch. Once populated the cache never expires; create a
    new client to query a peer again.
    """

    def __init__(self, fetch: Callable[[], VersionInfo]):
        self._fetch = fetch
        self._version: Optional[VersionInfo] = None
        self._lock = threading.Lock()

    @property
    def is_cached(self) -> bool:
        return self._version is not None

    def version(self) -> VersionInfo:
        """Return the cached descriptor, fetching it on first use"""
        version = self._version
        if version is not None:
            return version

        with self._lock:
            if self._version is None:
                logger.debug("Version cache miss, fetching remote version")
                self._version = self._fetch()
            return self._version

    def is_supported(self, feature: str) -> bool:
        """
        Check whether the remote peer supports a feature.

        Args:
            feature: One of the FEATURE_* constants

        Returns:
            True if supported

        Raises:
            InvalidFeature: Unknown feature name, raised before any fetch
        """
        if feature not in ALL_FEATURES:
            raise InvalidFeature(f"Invalid feature constant, '{feature}' given.")

        info = self.version()

        if feature in VERSION_THRESHOLDS:
            compare, patch = VERSION_THRESHOLDS[feature]
            parts = info.version_tuple
            if len(parts) < 3:
                return False
            return parts[0] == REQUIRED_MAJOR and parts[1] == REQUIRED_MINOR and compare(parts[2], patch)

        if feature == FEATURE_GALAXY_CLUSTER_EDIT:
            return FLAG_FEATURES[feature] in info

        if feature in FLAG_FEATURES:
            return bool(info.get(FLAG_FEATURES[feature], False))

        return COMPRESSION_FEATURES[feature] in info.compressed_requests
