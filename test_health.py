"""
Tests for health probes and the metrics endpoint.
"""


class TestHealth:
    """Test /health/live and /health/ready."""

    def test_live(self, client):
        """Test liveness always reports ok."""
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        """Test readiness passes with the schema applied and a secret set."""
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        assert response.json()["realtime_connections"] == 0

    def test_request_id_header(self, client):
        """Test every response carries a request id."""
        response = client.get("/health/live")

        assert response.headers["X-Request-ID"]


class TestMetrics:
    """Test /metrics exposition."""

    def test_send_outcomes_counted(self, client, alice, bob):
        """Test message sends show up by channel and result."""
        client.post(
            "/api/messages/send",
            json={"receiverId": bob["id"], "content": "hi", "tempId": "temp-1"},
            headers=alice["headers"],
        )

        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert 'messages_sent_total{channel="rest",result="created"}' in body
        assert "auto_created_contacts_total" in body
        assert "realtime_connections" in body
        assert 'path="/api/messages/send"' in body
