"""
pytest configuration and fixtures

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: tests/conftest.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Test Configuration

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Fixtures for server descriptors, the mock
                                MISP peer, sync clients and BDD context.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

import pytest
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from misp_sync import ClientIdentity, ServerDescriptor, ServerSync, SyncAuditLog, SyncSettings
from tests.generators.misp_fixtures import MISPFixtureGenerator
from tests.mock_misp import BASE_URL, MockMISPPeer


# =============================================================================
# Version Descriptors
# =============================================================================

MODERN_VERSION = {
    "version": "2.4.150",
    "perm_sync": True,
    "perm_sighting": True,
    "perm_galaxy_editor": True,
    "request_encoding": ["gzip", "br"],
    "compressed_requests": ["gzip", "br"],
}

LEGACY_VERSION = {
    "version": "2.4.100",
    "perm_sync": False,
}


@pytest.fixture
def modern_version() -> Dict[str, Any]:
    """Descriptor of a recent peer supporting every feature"""
    return dict(MODERN_VERSION)


@pytest.fixture
def legacy_version() -> Dict[str, Any]:
    """Descriptor of an old peer without optional endpoints"""
    return dict(LEGACY_VERSION)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def server() -> ServerDescriptor:
    return ServerDescriptor(id=7, url=BASE_URL + "/", authkey="a" * 40, name="partner")


@pytest.fixture
def client_identity() -> ClientIdentity:
    return ClientIdentity(version=(2, 4, 160), commit="abc1234")


@pytest.fixture
def fixtures() -> MISPFixtureGenerator:
    """Seeded MISP record generator"""
    return MISPFixtureGenerator(seed=42)


# =============================================================================
# Peer & Client Fixtures
# =============================================================================

@pytest.fixture
def peer(modern_version) -> MockMISPPeer:
    return MockMISPPeer(version_info=modern_version)


@pytest.fixture
def legacy_peer(legacy_version) -> MockMISPPeer:
    return MockMISPPeer(version_info=legacy_version)


@pytest.fixture
def make_sync(server, client_identity) -> Callable[..., ServerSync]:
    """Factory building a client bound to a given transport"""
    def _make(transport, settings: Optional[SyncSettings] = None,
              audit: Optional[SyncAuditLog] = None, **kwargs) -> ServerSync:
        return ServerSync(server, client_identity, settings=settings, transport=transport, audit=audit, **kwargs)
    return _make


@pytest.fixture
def sync(make_sync, peer) -> ServerSync:
    return make_sync(peer)


@pytest.fixture
def legacy_sync(make_sync, legacy_peer) -> ServerSync:
    return make_sync(legacy_peer)


# =============================================================================
# BDD Context Fixtures
# =============================================================================

@dataclass
class BDDContext:
    """Shared context for BDD step definitions"""
    peer: Optional[MockMISPPeer] = None
    sync: Optional[ServerSync] = None
    version_info: Dict[str, Any] = field(default_factory=dict)
    event: Optional[Dict[str, Any]] = None
    last_result: Optional[Any] = None
    last_error: Optional[Exception] = None
    pages: List[Any] = field(default_factory=list)


@pytest.fixture
def bdd_context() -> BDDContext:
    """Fresh BDD context for each scenario"""
    return BDDContext()


# =============================================================================
# pytest-bdd Hooks
# =============================================================================

def pytest_bdd_step_error(request, feature, scenario, step, step_func, step_func_args, exception):
    """Log step errors for debugging"""
    print(f"\nStep failed: {step}")
    print(f"Exception: {exception}")
