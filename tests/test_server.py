"""Tests for the HTTP block server."""

import pytest
from fastapi.testclient import TestClient

from cubesat.errors import NetworkUnavailable
from cubesat.hashing import content_hash
from cubesat.network import LocalNetwork, Network
from cubesat.server import create_app


class UnreachableNetwork(Network):
    async def put_block(self, block):
        raise NetworkUnavailable("upstream down")

    async def get_block(self, fingerprint):
        raise NetworkUnavailable("upstream down")

    async def has_block(self, fingerprint):
        return False


@pytest.fixture
def client():
    """Create a test client serving an in-memory block store."""
    return TestClient(create_app(LocalNetwork()))


class TestBlockServer:
    """Tests for block endpoints."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_put_and_get_block(self, client):
        block = {"type": "test", "n": 1}

        response = client.post("/api/blocks", json=block)

        assert response.status_code == 200
        fingerprint = response.json()["fingerprint"]
        assert fingerprint == content_hash(block)

        response = client.get(f"/api/blocks/{fingerprint}")
        assert response.status_code == 200
        assert response.json() == block

    def test_exists(self, client):
        fingerprint = client.post("/api/blocks", json={"a": 1}).json()["fingerprint"]

        assert client.get(f"/api/blocks/{fingerprint}/exists").json() == {"exists": True}
        assert client.get(f"/api/blocks/{'0' * 64}/exists").json() == {"exists": False}

    def test_missing_block(self, client):
        response = client.get(f"/api/blocks/{'0' * 64}")
        assert response.status_code == 404

    def test_malformed_fingerprint(self, client):
        assert client.get("/api/blocks/ABC").status_code == 400
        assert client.get("/api/blocks/ABC/exists").status_code == 400

    def test_non_object_body(self, client):
        response = client.post("/api/blocks", json=[1, 2, 3])
        assert response.status_code == 422

    def test_upstream_failure(self):
        client = TestClient(create_app(UnreachableNetwork()))

        response = client.get(f"/api/blocks/{'0' * 64}")

        assert response.status_code == 503
