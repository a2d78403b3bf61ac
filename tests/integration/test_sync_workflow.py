"""
Integration tests for complete sync workflows

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: tests/integration/test_sync_workflow.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Integration Test Suite

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  End-to-end workflows through the requests
                                transport, replayed from VCR cassettes.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

import pytest

from misp_sync import (
    ClientIdentity,
    HttpError,
    RequestsTransport,
    ServerDescriptor,
    ServerSync,
    SyncSettings,
)
from tests.vcr_config import list_cassettes, use_cassette

EVENT_UUID = "5f5a2b3c-1111-4a2b-9c3d-0123456789ab"


# =============================================================================
# Integration Test Fixtures
# =============================================================================

@pytest.fixture
def remote():
    return ServerDescriptor(id=3, url="https://misp.example.com", authkey="X" * 40, name="partner")


@pytest.fixture
def event():
    return {"Event": {
        "uuid": EVENT_UUID,
        "info": "Phishing wave",
        "timestamp": "1700000000",
        "Attribute": [],
    }}


@pytest.fixture
def live_sync(remote):
    """Client owning a real requests transport"""
    sync = ServerSync(remote, ClientIdentity((2, 4, 160)), settings=SyncSettings(timeout=10))
    yield sync
    sync.close()


# =============================================================================
# Cassette Inventory
# =============================================================================

class TestCassettes:
    """Cassette inventory"""

    def test_cassettes_are_present(self):
        """Every workflow below replays from a stored cassette"""
        cassettes = list_cassettes()

        for name in [
            "attribute_cache_pages.yaml",
            "pull_proposals_pages.yaml",
            "push_event_forbidden.yaml",
            "push_existing_event_legacy.yaml",
            "push_new_event.yaml",
            "reset_auth_key.yaml",
        ]:
            assert name in cassettes


# =============================================================================
# Event Push Workflows
# =============================================================================

class TestEventPushWorkflow:
    """Event push through the requests transport"""

    def test_client_uses_requests_transport(self, live_sync):
        """Without an injected transport the client builds its own"""
        assert isinstance(live_sync._transport, RequestsTransport)

    @use_cassette("push_new_event")
    def test_push_new_event(self, live_sync, event):
        """Modern peer: checkuuid says missing, event is created"""
        result = live_sync.push_event(event)

        assert result["Event"]["id"] == "1204"
        assert live_sync.get_version().version == "2.4.150"
        assert live_sync.is_supported(ServerSync.FEATURE_BROTLI_REQUESTS) is True

    @use_cassette("push_existing_event_legacy")
    def test_push_existing_event_to_legacy_peer(self, live_sync, event):
        """Legacy peer: HEAD finds the event, event is edited"""
        result = live_sync.push_event(event)

        assert result["Event"]["id"] == "88"
        assert live_sync.is_supported(ServerSync.FEATURE_CHECK_UUID) is False

    @use_cassette("push_event_forbidden")
    def test_rejected_push_carries_reason(self, live_sync, event):
        """A 403 answer surfaces as HttpError with the server reason"""
        with pytest.raises(HttpError) as exc_info:
            live_sync.push_event(event)

        error = exc_info.value
        assert error.status_code == 403
        assert error.reason == "Event blocked by organisation blocklist"
        assert "HTTP error 403" in str(error)
        assert error.url == "https://misp.example.com/events/add/metadata:1"


# =============================================================================
# Bulk Pull Workflows
# =============================================================================

class TestBulkPullWorkflow:
    """Paginated pulls through the requests transport"""

    @use_cassette("attribute_cache_pages")
    def test_attribute_cache_stops_on_short_page(self, live_sync):
        """Paging stops after the first page shorter than the chunk size"""
        pages = list(live_sync.attribute_cache(chunk_size=2))

        assert [len(page) for page in pages] == [2, 1]
        assert pages[1][0].endswith(",5f5a2b3c-3333-4a2b-9c3d-0123456789ab")

    @use_cassette("pull_proposals_pages")
    def test_pull_proposals_stops_on_empty_page(self, live_sync):
        """Proposal paging uses literal brackets and stops on an empty page"""
        proposals = list(live_sync.pull_proposals(1700000000, chunk_size=2))

        assert [p["ShadowAttribute"]["id"] for p in proposals] == ["11", "12"]


# =============================================================================
# Account Workflows
# =============================================================================

class TestAccountWorkflow:
    """Account maintenance through the requests transport"""

    @use_cassette("reset_auth_key")
    def test_reset_auth_key(self, live_sync):
        """The rotated key is cut from the server message"""
        assert live_sync.reset_auth_key() == "X" * 40
