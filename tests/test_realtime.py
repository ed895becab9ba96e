"""Tests for the WebSocket snapshot push."""
import time

import pytest
from starlette.websockets import WebSocketDisconnect

from civicmap.api.realtime import manager


@pytest.mark.db_required
class TestReportsSocket:

    def test_initial_snapshot_then_updates(self, client, auth_headers):
        with client.websocket_connect("/ws/reports") as ws:
            first = ws.receive_json()
            assert first == {"type": "reports", "reports": []}
            assert manager.connection_count("reports") == 1

            response = client.post(
                "/api/reports/",
                json={
                    "mode": "suggestion",
                    "description": "Add a bike lane",
                    "location": {"lat": 50.63, "lng": 3.06},
                },
                headers=auth_headers("citizen-1"),
            )
            assert response.status_code == 201

            update = ws.receive_json()
            assert update["type"] == "reports"
            assert [r["id"] for r in update["reports"]] == [response.json()["id"]]
            assert "type" not in update["reports"][0]

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws/reports") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_subscription_released_on_close(self, client, feed):
        with client.websocket_connect("/ws/reports") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})
            ws.receive_json()
            assert feed.listener_count("reports") == 1
        # The server side notices the close asynchronously
        for _ in range(50):
            if feed.listener_count("reports") == 0:
                break
            time.sleep(0.02)
        assert feed.listener_count("reports") == 0
        assert manager.connection_count("reports") == 0


@pytest.mark.db_required
class TestProfileSocket:

    def test_profile_updates(self, client, auth_headers):
        headers = auth_headers("citizen-1", "Jo")
        client.post("/api/users/me", headers=headers)
        token = headers["Authorization"].split()[1]

        with client.websocket_connect(f"/ws/profile?token={token}") as ws:
            first = ws.receive_json()
            assert first["type"] == "profile"
            assert first["profile"]["uid"] == "citizen-1"
            assert first["profile"]["points"] == 0
            assert first["profile"]["displayName"] == "Jo"

            client.post(
                "/api/reports/",
                json={
                    "mode": "problem",
                    "description": "Broken bench",
                    "photo": "https://example.org/bench.jpg",
                    "location": {"lat": 50.63, "lng": 3.06},
                },
                headers=headers,
            )
            assert ws.receive_json()["profile"]["points"] == 20

    def test_invalid_token_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/profile?token=bad") as ws:
                ws.receive_json()


@pytest.mark.db_required
class TestSocketLifecycle:

    def test_reconnect_after_close(self, client, feed):
        for _ in range(3):
            with client.websocket_connect("/ws/reports") as ws:
                assert ws.receive_json() == {"type": "reports", "reports": []}
                ws.send_json({"type": "ping"})
                assert ws.receive_json() == {"type": "pong"}
        for _ in range(50):
            if feed.listener_count("reports") == 0:
                break
            time.sleep(0.02)
        assert feed.listener_count("reports") == 0

    def test_non_json_message_ignored(self, client):
        with client.websocket_connect("/ws/reports") as ws:
            ws.receive_json()
            ws.send_text("hello")
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
