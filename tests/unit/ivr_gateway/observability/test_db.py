from __future__ import annotations

import contextlib

import pytest

import ivr_gateway.app.observability.db as db_module

from .._fakes import FakeConnection, run


class _FakePool:
    def __init__(self, conn: FakeConnection) -> None:
        self._conn = conn
        self.closed = False

    @contextlib.asynccontextmanager
    async def acquire(self):  # noqa: ANN202
        yield self._conn

    async def close(self) -> None:
        self.closed = True


def _patch_create_pool(monkeypatch: pytest.MonkeyPatch, pool: _FakePool) -> None:
    async def create_pool(dsn, **kwargs):  # noqa: ANN001, ANN003, ANN202
        return pool

    monkeypatch.setattr(db_module.asyncpg, "create_pool", create_pool)
    monkeypatch.setattr(db_module, "_pool", None)


def test_init_pool_creates_schema_and_reuses_pool(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = FakeConnection()
    pool = _FakePool(conn)
    _patch_create_pool(monkeypatch, pool)

    async def scenario():  # noqa: ANN202
        first = await db_module.init_pool("postgresql://ivr@localhost/ivr")
        second = await db_module.init_pool("postgresql://ivr@localhost/ivr")
        await db_module.close_pool()
        return first, second

    first, second = run(scenario())

    assert first is second is pool
    assert [sql for sql, _ in conn.executed] == [db_module.CALL_EVENTS_DDL]
    assert pool.closed
    assert db_module._pool is None


def test_init_pool_closes_pool_when_schema_setup_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    pool = _FakePool(FakeConnection(fail=True))
    _patch_create_pool(monkeypatch, pool)

    with pytest.raises(ConnectionError):
        run(db_module.init_pool("postgresql://ivr@localhost/ivr"))

    assert pool.closed
    assert db_module._pool is None


def test_init_pool_requires_connection_string(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(db_module, "_pool", None)
    monkeypatch.setattr(db_module.settings, "DB_CONNECTION_STRING", None)

    with pytest.raises(RuntimeError):
        run(db_module.init_pool())


def test_get_conn_requires_initialized_pool(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(db_module, "_pool", None)

    async def scenario() -> None:
        async with db_module.get_conn():
            pass

    with pytest.raises(RuntimeError):
        run(scenario())
