"""
Sync Configuration - Peer descriptors, client identity and settings

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/config.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Configuration

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Server descriptor, client identity and sync
                                settings dataclasses with dict/env loaders.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import os
import re

from .exceptions import InvalidConfiguration

# Encodings this client is able to decode in responses, in preference order
ACCEPTED_RESPONSE_ENCODINGS: Tuple[str, ...] = ("br", "gzip")

DEFAULT_TIMEOUT = 300
DEFAULT_COMPRESSION_THRESHOLD = 1024
DEFAULT_COMPRESSION_LEVEL = 3
MAX_COMPRESSION_LEVEL = 9

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


# =============================================================================
# Remote Peer
# =============================================================================

@dataclass(frozen=True)
class ServerDescriptor:
    """
    Identifies a remote MISP instance.

    Owned by the caller and never mutated by the sync client.
    """
    id: Optional[int]
    url: str
    authkey: str
    name: str = ""
    verify_ssl: bool = True
    ca_bundle: Optional[str] = None
    client_cert: Optional[str] = None
    proxies: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # frozen dataclass, normalise through object.__setattr__
        if self.url:
            object.__setattr__(self, "url", self.url.rstrip("/"))

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ServerDescriptor":
        """
        Build a descriptor from a configuration mapping.

        Accepts either a flat mapping or the ``{"Server": {...}}`` envelope
        returned by the platform's own server index.

        Args:
            config: Configuration dictionary

        Returns:
            ServerDescriptor instance
        """
        if "Server" in config and isinstance(config["Server"], dict):
            config = config["Server"]

        server_id = config.get("id")
        if server_id is not None and server_id != "":
            try:
                server_id = int(server_id)
            except (TypeError, ValueError):
                raise InvalidConfiguration(f"Server id must be numeric, got {server_id!r}")
        else:
            server_id = None

        return cls(
            id=server_id,
            url=config.get("url", ""),
            authkey=config.get("authkey", ""),
            name=config.get("name", ""),
            verify_ssl=not config.get("self_signed", False) and config.get("verify_ssl", True),
            ca_bundle=config.get("cert_file") or config.get("ca_bundle"),
            client_cert=config.get("client_cert_file") or config.get("client_cert"),
            proxies=dict(config.get("proxies", {})),
        )


# =============================================================================
# Local Identity
# =============================================================================

@dataclass(frozen=True)
class ClientIdentity:
    """Local platform version and optional commit id sent with every request"""
    version: Tuple[int, int, int]
    commit: Optional[str] = None

    @classmethod
    def parse(cls, version: str, commit: Optional[str] = None) -> "ClientIdentity":
        """Build an identity from a dotted version string such as ``2.4.150``"""
        match = _VERSION_RE.match(version.strip())
        if not match:
            raise InvalidConfiguration(f"Invalid client version string: {version!r}")
        return cls(version=tuple(int(part) for part in match.groups()), commit=commit)

    @property
    def version_string(self) -> str:
        return ".".join(str(part) for part in self.version)

    @property
    def user_agent(self) -> str:
        suffix = f" - #{self.commit}" if self.commit else ""
        return f"MISP {self.version_string}{suffix}"


# =============================================================================
# Client Settings
# =============================================================================

@dataclass
class SyncSettings:
    """Tunable behaviour of a sync client"""
    timeout: float = DEFAULT_TIMEOUT
    compress_responses: bool = True
    compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    sync_audit: bool = False
    audit_dir: str = "tmp"
    max_retries: int = 0

    def __post_init__(self):
        if self.timeout is None or self.timeout <= 0:
            raise InvalidConfiguration(f"Timeout must be positive, got {self.timeout!r}")
        if self.compression_threshold < 0:
            raise InvalidConfiguration("Compression threshold cannot be negative")
        # gzip accepts 0..9, Brotli 0..11
        if not 0 <= self.compression_level <= MAX_COMPRESSION_LEVEL:
            raise InvalidConfiguration(
                f"Compression level must be between 0 and {MAX_COMPRESSION_LEVEL}, got {self.compression_level!r}"
            )
        if self.max_retries < 0:
            raise InvalidConfiguration("max_retries cannot be negative")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "SyncSettings":
        """
        Load settings from ``MISP_SYNC_*`` environment variables.

        Unset variables keep their dataclass defaults.
        """
        env = os.environ if environ is None else environ

        def _flag(name: str, default: bool) -> bool:
            value = env.get(name)
            if value is None:
                return default
            return value.strip().lower() in ("1", "true", "yes", "on")

        try:
            return cls(
                timeout=float(env.get("MISP_SYNC_TIMEOUT", DEFAULT_TIMEOUT)),
                compress_responses=_flag("MISP_SYNC_COMPRESS", True),
                sync_audit=_flag("MISP_SYNC_AUDIT", False),
                audit_dir=env.get("MISP_SYNC_AUDIT_DIR", "tmp"),
                max_retries=int(env.get("MISP_SYNC_MAX_RETRIES", 0)),
            )
        except ValueError as e:
            if isinstance(e, InvalidConfiguration):
                raise
            raise InvalidConfiguration(f"Invalid sync settings in environment: {e}") from e

    @property
    def accept_encoding(self) -> Optional[str]:
        if not self.compress_responses:
            return None
        return ", ".join(ACCEPTED_RESPONSE_ENCODINGS)
