"""
Integration tests for the HTTP query surface.

Tests cover:
- Basic auth
- Statements, transactions and error payloads
- Prepared statement endpoints
- Disconnect, health and metrics
- Abandoned transactions reported as stale
"""

import asyncio
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from aiohttp import BasicAuth
from aiohttp import test_utils

from dbaas.blobsql_server.api import create_http_app
from dbaas.blobsql_server.config import AuthConfig
from dbaas.blobsql_server.coordinator import TransactionCoordinator
from dbaas.blobsql_server.engine import SQLiteEngine
from dbaas.blobsql_server.registry import ConnectionRegistry

AUTH = BasicAuth("app", "s3cret")


class TestHttpServer:
    """Integration tests for the aiohttp application."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def coordinator(self, data_dir):
        engine = SQLiteEngine(str(Path(data_dir) / "work.sqlite"))
        engine.open()
        engine.exec("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT, blob BLOB)")
        yield TransactionCoordinator(ConnectionRegistry(), engine)
        engine.close()

    @asynccontextmanager
    async def client(self, coordinator, stale_transaction_seconds=300.0):
        app = create_http_app(
            coordinator,
            AuthConfig(user="app", password="s3cret"),
            stale_transaction_seconds=stale_transaction_seconds,
            db_name="appdb",
        )
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            yield client

    async def query(self, client, sql, params=None, conn="c1"):
        body = {"sql": sql}
        if params is not None:
            body["params"] = params
        resp = await client.post(
            "/v1/query", json=body, auth=AUTH, headers={"X-Connection-ID": conn}
        )
        return resp.status, await resp.json()

    @pytest.mark.asyncio
    async def test_requires_auth(self, coordinator):
        """Requests without valid credentials are rejected."""
        async with self.client(coordinator) as client:
            resp = await client.post("/v1/query", json={"sql": "SELECT 1"})
            assert resp.status == 401

            resp = await client.post(
                "/v1/query", json={"sql": "SELECT 1"}, auth=BasicAuth("app", "wrong")
            )
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_health_is_public(self, coordinator):
        async with self.client(coordinator) as client:
            resp = await client.get("/v1/health")
            body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "healthy"
        assert body["db_name"] == "appdb"

    @pytest.mark.asyncio
    async def test_select(self, coordinator):
        """Rows come back with columns, types and a command tag."""
        async with self.client(coordinator) as client:
            await self.query(
                client, "INSERT INTO notes (body, blob) VALUES (?, ?)", ["hi", None]
            )
            status, body = await self.query(client, "SELECT id, body FROM notes")

        assert status == 200
        assert body["command_tag"] == "SELECT 1"
        assert body["columns"] == ["id", "body"]
        assert body["types"] == ["int8", "text"]
        assert body["rows"] == [[1, "hi"]]
        assert body["transaction_status"] == "idle"

    @pytest.mark.asyncio
    async def test_bytes_are_hex_encoded(self, coordinator):
        async with self.client(coordinator) as client:
            status, body = await self.query(client, "SELECT X'DEADBEEF' AS b")

        assert status == 200
        assert body["rows"] == [["\\xdeadbeef"]]
        assert body["types"] == ["bytea"]

    @pytest.mark.asyncio
    async def test_transaction_across_requests(self, coordinator):
        """A connection id carries its transaction between requests."""
        async with self.client(coordinator) as client:
            status, body = await self.query(client, "BEGIN")
            assert body["transaction_status"] == "active"

            await self.query(client, "INSERT INTO notes (body) VALUES ('draft')")
            _, other = await self.query(client, "SELECT COUNT(*) FROM notes", conn="c2")
            assert other["rows"] == [[0]]

            _, body = await self.query(client, "COMMIT")
            assert body["command_tag"] == "COMMIT"
            assert body["transaction_status"] == "idle"

            _, other = await self.query(client, "SELECT COUNT(*) FROM notes", conn="c2")
            assert other["rows"] == [[1]]

    @pytest.mark.asyncio
    async def test_error_payload(self, coordinator):
        """Statement errors return 400 with error class and sqlstate."""
        async with self.client(coordinator) as client:
            status, body = await self.query(client, "SELECT * FROM missing")

        assert status == 400
        assert body["sqlstate"] == "42P01"
        assert body["error_class"] == "undefined_table"
        assert body["transaction_status"] == "idle"

    @pytest.mark.asyncio
    async def test_rollback_notice(self, coordinator):
        async with self.client(coordinator) as client:
            status, body = await self.query(client, "ROLLBACK")

        assert status == 200
        assert body["notice"] == "there is no transaction in progress"

    @pytest.mark.asyncio
    async def test_bad_request(self, coordinator):
        async with self.client(coordinator) as client:
            resp = await client.post("/v1/query", json={"params": []}, auth=AUTH)
            assert resp.status == 400

            resp = await client.post(
                "/v1/query", json={"sql": "SELECT 1", "params": "x"}, auth=AUTH
            )
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_prepared_statements(self, coordinator):
        async with self.client(coordinator) as client:
            resp = await client.post(
                "/v1/prepare",
                json={"name": "ins", "sql": "INSERT INTO notes (body) VALUES (?)"},
                auth=AUTH,
            )
            assert resp.status == 200

            resp = await client.post(
                "/v1/execute", json={"name": "ins", "params": ["x"]}, auth=AUTH
            )
            body = await resp.json()
            assert body["command_tag"] == "INSERT 0 1"

            resp = await client.post("/v1/close", json={"name": "ins"}, auth=AUTH)
            assert resp.status == 200

            resp = await client.post("/v1/execute", json={"name": "ins"}, auth=AUTH)
            body = await resp.json()
            assert resp.status == 400
            assert body["sqlstate"] == "42704"

    @pytest.mark.asyncio
    async def test_disconnect_rolls_back(self, coordinator):
        async with self.client(coordinator) as client:
            await self.query(client, "BEGIN")
            await self.query(client, "INSERT INTO notes (body) VALUES ('lost')")

            resp = await client.delete("/v1/connections/c1", auth=AUTH)
            body = await resp.json()
            assert body["rolled_back"] is True

            _, other = await self.query(client, "SELECT COUNT(*) FROM notes", conn="c2")
            assert other["rows"] == [[0]]

    @pytest.mark.asyncio
    async def test_metrics(self, coordinator):
        async with self.client(coordinator) as client:
            await self.query(client, "BEGIN")
            await self.query(client, "COMMIT")
            await self.query(client, "BEGIN", conn="c2")

            resp = await client.get("/v1/metrics", auth=AUTH)
            body = await resp.json()

        assert body["transactions"]["committed"] == 1
        assert body["transactions"]["active"] == 1
        assert [t["connection_id"] for t in body["active_transactions"]] == ["c2"]
        assert body["stale_transactions"] == []
        assert [c["connection_id"] for c in body["connections"]] == ["c1", "c2"]
        assert [c["status"] for c in body["connections"]] == ["idle", "active"]

    @pytest.mark.asyncio
    async def test_abandoned_transaction_is_stale(self, coordinator):
        """A client that never disconnects leaves a stale open transaction."""
        async with self.client(coordinator, stale_transaction_seconds=0.05) as client:
            await self.query(client, "BEGIN")
            await self.query(client, "INSERT INTO notes (body) VALUES ('held')")
            await asyncio.sleep(0.1)

            resp = await client.get("/v1/metrics", auth=AUTH)
            body = await resp.json()

            assert body["stale_transactions"] == ["c1"]

            await client.delete("/v1/connections/c1", auth=AUTH)
            resp = await client.get("/v1/metrics", auth=AUTH)
            body = await resp.json()

        assert body["stale_transactions"] == []
        assert body["connections"] == []
