"""Tests for the /ws/match push endpoint."""
from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from peermatch.main import create_app


@asynccontextmanager
async def _noop_lifespan(app):
    yield


@pytest.fixture
def ws_client(services):
    application = create_app()
    application.router.lifespan_context = _noop_lifespan
    application.state.services = services
    with TestClient(application) as client:
        yield client


def test_connect_reports_status(ws_client, services, store, clock):
    store._requeue("alice", "dp", "medium", repr(clock.now))

    with ws_client.websocket_connect("/ws/match?userId=alice") as ws:
        status = ws.receive_json()
        assert status["type"] == "status"
        assert status["status"] == "queued"
        assert status["inRoom"] is False
        assert status["category"] == "dp"
        assert "waited" in status
        assert services.registry.is_connected("alice")

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_disconnect_abandons_queue_entry(ws_client, services, store, clock):
    store._requeue("alice", "dp", "medium", repr(clock.now))

    with ws_client.websocket_connect("/ws/match?userId=alice") as ws:
        ws.receive_json()

    assert services.registry.is_connected("alice") is False
    assert store.user_state("alice") == set()
