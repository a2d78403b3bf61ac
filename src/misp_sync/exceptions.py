"""
Sync Exceptions - Error taxonomy for server synchronization

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/exceptions.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Core Implementation

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Unified exception hierarchy covering transport,
                                HTTP, content encoding and payload failures.
-------------------------------------------------------------------------------

License: MIT

None of these errors are retried by the client. Retry and backoff policy
belongs to the caller.
===============================================================================
"""

from typing import Any, Optional


class SyncError(Exception):
    """
    Base exception for all synchronization errors.

    Attributes:
        message: Human-readable error description
        url: URL of the request that failed, if any
        response: SyncResponse that triggered the error, if any
        cause: Original exception if wrapping
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        response: Optional[Any] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.url = url
        self.response = response
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Transport Errors
# =============================================================================

class TransportFailure(SyncError):
    """Connection refused, DNS failure, timeout or a response without status"""


# =============================================================================
# HTTP Errors
# =============================================================================

class HttpError(SyncError):
    """Remote server answered with a non-2xx status code"""

    def __init__(
        self,
        message: str,
        status_code: int,
        url: Optional[str] = None,
        reason: Optional[str] = None,
        response: Optional[Any] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, url=url, response=response, cause=cause)
        self.status_code = status_code
        self.reason = reason


class RequestFailed(HttpError):
    """HEAD request answered with neither 200 nor 404"""


# =============================================================================
# Content Encoding Errors
# =============================================================================

class EncodingError(SyncError):
    """Base class for response content-encoding failures"""


class UnsupportedEncoding(EncodingError):
    """Remote server used a Content-Encoding this client cannot decode"""

    def __init__(self, encoding: str, url: Optional[str] = None, response: Optional[Any] = None):
        super().__init__(
            f"Remote server returns unsupported content encoding '{encoding}'",
            url=url,
            response=response,
        )
        self.encoding = encoding


class DecodeFailure(EncodingError):
    """Response body cannot be decompressed, or is not valid UTF-8 text"""


# =============================================================================
# Payload Errors
# =============================================================================

class JsonDecodeFailure(SyncError):
    """Response body is not valid JSON. Always carries the response."""


class UnexpectedResponseShape(JsonDecodeFailure):
    """
    Response is well-formed JSON but lacks a required field.

    Attributes:
        field: Name of the offending field
        problem: ``"missing"`` when the field is absent, ``"invalid"`` when
            it is present with the wrong type or value
    """

    def __init__(
        self,
        message: str,
        field: str,
        problem: str = "missing",
        url: Optional[str] = None,
        response: Optional[Any] = None,
    ):
        super().__init__(message, url=url, response=response)
        self.field = field
        self.problem = problem


# =============================================================================
# Caller Errors
# =============================================================================

class InvalidFeature(SyncError, ValueError):
    """Unknown feature name passed to a capability query"""


class InvalidConfiguration(SyncError, ValueError):
    """Client constructed with incomplete or malformed configuration"""


class InvalidArgument(SyncError, ValueError):
    """Domain operation called with a malformed record"""
