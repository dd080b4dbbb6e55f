"""Tests for health check endpoint."""

from fastapi.testclient import TestClient

from margin_engine.main import app

client = TestClient(app)


def test_health_check():
    """Test health check endpoint returns 200 with status ok."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
