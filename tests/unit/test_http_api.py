"""
Unit tests for the HTTP API.

Tests cover:
- Entity writes and temporal reads
- Error to status code mapping
- Ledger digest and verification
"""

import json

import pytest
from fastapi.testclient import TestClient

from histdb.api import Settings, create_http_app
from histdb.clock import ManualClock
from histdb.config import HistDbConfig, LedgerConfig, LedgerMode, StorageBackend, StorageConfig
from histdb.database import HistDb
from histdb.storage import InMemoryRecordLog
from histdb.store import VERSIONS_STREAM


def make_db(log=None, **ledger):
    config = HistDbConfig(
        storage=StorageConfig(backend=StorageBackend.MEMORY),
        ledger=LedgerConfig(**ledger),
    )
    return HistDb(config, log=log, clock=ManualClock(0))


def seed_e1(client):
    """A at 0, B at 10, C at 20, closed at 30."""
    assert client.post(
        "/v1/entities", json={"entity_id": "E1", "attributes": {"name": "A"}, "at": 0}
    ).status_code == 201
    assert client.put("/v1/entities/E1", json={"attributes": {"name": "B"}, "at": 10}).status_code == 200
    assert client.put("/v1/entities/E1", json={"attributes": {"name": "C"}, "at": 20}).status_code == 200
    assert client.delete("/v1/entities/E1", params={"at": 30}).status_code == 200


class TestEntityRoutes:
    """Tests for entity routes."""

    @pytest.fixture
    def client(self):
        app = create_http_app(make_db())
        with TestClient(app) as client:
            yield client

    def test_insert(self, client):
        response = client.post(
            "/v1/entities", json={"entity_id": "E1", "attributes": {"name": "A"}, "at": 5}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["entity_id"] == "E1"
        assert body["attributes"] == {"name": "A"}
        assert body["valid_from"] == 5
        assert body["valid_to"] is None
        assert body["sequence"] == 0

    def test_versions(self, client):
        seed_e1(client)

        versions = client.get("/v1/entities/E1/versions").json()

        assert [v["attributes"]["name"] for v in versions] == ["A", "B", "C"]
        assert [(v["valid_from"], v["valid_to"]) for v in versions] == [(0, 10), (10, 20), (20, 30)]

    def test_as_of(self, client):
        seed_e1(client)

        assert client.get("/v1/entities/E1/as-of", params={"t": 5}).json()["attributes"] == {"name": "A"}
        assert client.get("/v1/entities/E1/as-of", params={"t": 10}).json()["attributes"] == {"name": "B"}

        response = client.get("/v1/entities/E1/as-of", params={"t": 30})
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    @pytest.mark.parametrize(
        "mode, expected",
        [("from", ["B"]), ("between", ["B", "C"]), ("contained", ["B"])],
    )
    def test_range_modes(self, client, mode, expected):
        seed_e1(client)

        response = client.get(
            "/v1/entities/E1/range", params={"start": 10, "end": 20, "mode": mode}
        )

        assert response.status_code == 200
        assert [v["attributes"]["name"] for v in response.json()] == expected

    def test_backwards_range(self, client):
        seed_e1(client)

        response = client.get("/v1/entities/E1/range", params={"start": 20, "end": 10})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INTERVAL"

    def test_unknown_range_mode(self, client):
        response = client.get(
            "/v1/entities/E1/range", params={"start": 0, "end": 10, "mode": "sideways"}
        )

        assert response.status_code == 422

    def test_insert_conflict(self, client):
        seed_e1(client)

        response = client.post("/v1/entities", json={"entity_id": "E1", "attributes": {}, "at": 40})

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    def test_update_unknown(self, client):
        response = client.put("/v1/entities/missing", json={"attributes": {"x": 1}, "at": 10})

        assert response.status_code == 404
        assert response.json()["details"] == {"entity_id": "missing"}

    def test_update_not_after_current(self, client):
        client.post("/v1/entities", json={"entity_id": "E1", "attributes": {}, "at": 10})

        response = client.put("/v1/entities/E1", json={"attributes": {"x": 1}, "at": 10})

        assert response.status_code == 400

    def test_update_without_timestamps_in_same_millisecond(self, client):
        client.post("/v1/entities", json={"entity_id": "E1", "attributes": {"n": 1}})

        response = client.put("/v1/entities/E1", json={"attributes": {"n": 2}})

        assert response.status_code == 200
        assert response.json()["valid_from"] == 1

    def test_transaction(self, client):
        client.post("/v1/entities", json={"entity_id": "E1", "attributes": {"n": 1}, "at": 0})

        response = client.post(
            "/v1/transactions",
            json={
                "at": 10,
                "changes": [
                    {"op": "update", "entity_id": "E1", "attributes": {"n": 2}},
                    {"op": "insert", "entity_id": "E2", "attributes": {"n": 1}},
                ],
            },
        )

        assert response.status_code == 200
        assert [v["entity_id"] for v in response.json()] == ["E1", "E2"]
        assert client.get("/v1/ledger/digest").json()["block_id"] == 1

    def test_transaction_missing_attributes(self, client):
        response = client.post(
            "/v1/transactions",
            json={"changes": [{"op": "insert", "entity_id": "E1"}]},
        )

        assert response.status_code == 400
        assert client.get("/v1/entities/E1/versions").json() == []

    def test_health(self, client):
        seed_e1(client)

        body = client.get("/v1/health").json()

        assert body["status"] == "healthy"
        assert body["entities"] == 1
        assert body["ledger_blocks"] == 4


class TestLedgerRoutes:
    """Tests for ledger routes."""

    def test_digest_and_verify(self):
        with TestClient(create_http_app(make_db())) as client:
            seed_e1(client)

            digest = client.get("/v1/ledger/digest").json()
            response = client.post("/v1/ledger/verify", json=digest)

            assert digest["block_id"] == 3
            assert response.status_code == 200
            assert response.json()["verified"] is True
            assert response.json()["blocks_verified"] == 4

    def test_verify_wrong_digest(self):
        with TestClient(create_http_app(make_db())) as client:
            seed_e1(client)

            response = client.post("/v1/ledger/verify", json={"block_id": 3, "hash": "00" * 32})

            assert response.status_code == 409
            assert response.json()["code"] == "TAMPER_DETECTED"
            assert response.json()["details"]["block_id"] == 3

    def test_verify_detects_edited_version(self):
        log = InMemoryRecordLog()
        with TestClient(create_http_app(make_db(log=log))) as client:
            seed_e1(client)
            digest = client.get("/v1/ledger/digest").json()
            record = log.get_all_records(VERSIONS_STREAM)[1].payload_json()
            record["mutations"][1]["attributes"] = {"name": "Z"}
            log.overwrite_record(VERSIONS_STREAM, 1, json.dumps(record).encode())

            response = client.post("/v1/ledger/verify", json=digest)

            assert response.status_code == 409
            assert response.json()["details"]["block_id"] == 1

    def test_verify_negative_block_id_rejected(self):
        with TestClient(create_http_app(make_db())) as client:
            seed_e1(client)

            response = client.post("/v1/ledger/verify", json={"block_id": -2, "hash": "00" * 32})

            assert response.status_code == 422

    def test_entries(self):
        with TestClient(create_http_app(make_db())) as client:
            seed_e1(client)

            entries = client.get("/v1/ledger/entries", params={"entity_id": "E1"}).json()

            assert [(e["block_id"], e["operation"]) for e in entries] == [
                (0, "INSERT"),
                (1, "DELETE"),
                (1, "INSERT"),
                (2, "DELETE"),
                (2, "INSERT"),
                (3, "DELETE"),
            ]

    def test_append_only(self):
        with TestClient(create_http_app(make_db(mode=LedgerMode.APPEND_ONLY))) as client:
            client.post("/v1/entities", json={"entity_id": "E1", "attributes": {}, "at": 0})

            response = client.put("/v1/entities/E1", json={"attributes": {"x": 1}, "at": 10})

            assert response.status_code == 405
            assert response.json()["code"] == "IMMUTABLE"

    def test_ledger_disabled(self):
        with TestClient(create_http_app(make_db(enabled=False))) as client:
            response = client.get("/v1/ledger/digest")

            assert response.status_code == 400
            assert response.json()["code"] == "LEDGER_DISABLED"


class TestSettings:
    """Tests for API settings."""

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("HISTDB_API_PORT", "9999")
        monkeypatch.setenv("HISTDB_API_ALLOW_WRITES", "false")

        settings = Settings()

        assert settings.port == 9999
        assert settings.allow_writes is False

    def test_writes_disabled(self):
        app = create_http_app(make_db(), Settings(allow_writes=False))
        with TestClient(app) as client:
            response = client.post(
                "/v1/entities", json={"entity_id": "E1", "attributes": {}, "at": 0}
            )

            assert response.status_code == 403
            assert client.get("/v1/entities/E1/versions").status_code == 200
