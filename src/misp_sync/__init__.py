"""
MISP Sync - Version-aware synchronization client for MISP servers

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/__init__.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Package Initialization

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Package initialization with version and
                                public API exports.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

__version__ = "1.0.0"
__author__ = "MISP Sync Contributors"
__license__ = "MIT"

from .audit import SyncAuditLog
from .capabilities import CapabilityCache, VersionInfo
from .config import ClientIdentity, ServerDescriptor, SyncSettings
from .exceptions import (
    DecodeFailure,
    EncodingError,
    HttpError,
    InvalidArgument,
    InvalidConfiguration,
    InvalidFeature,
    JsonDecodeFailure,
    RequestFailed,
    SyncError,
    TransportFailure,
    UnexpectedResponseShape,
    UnsupportedEncoding,
)
from .response import SyncRequest, SyncResponse
from .server_sync import ServerSync
from .transport import RequestsTransport, Transport, TransportResult

__all__ = [
    # Client
    "ServerSync",
    "CapabilityCache",
    "VersionInfo",
    "SyncAuditLog",
    # Configuration
    "ServerDescriptor",
    "ClientIdentity",
    "SyncSettings",
    # Transport
    "Transport",
    "TransportResult",
    "RequestsTransport",
    "SyncRequest",
    "SyncResponse",
    # Errors
    "SyncError",
    "TransportFailure",
    "HttpError",
    "RequestFailed",
    "EncodingError",
    "UnsupportedEncoding",
    "DecodeFailure",
    "JsonDecodeFailure",
    "UnexpectedResponseShape",
    "InvalidFeature",
    "InvalidConfiguration",
    "InvalidArgument",
    "__version__",
]
