import pytest
from sqlalchemy.exc import OperationalError

from sequel_core.exceptions import DatabaseError, TransactionNotActiveError
from sequel_core.orm.connection import DBConnection, Transaction
from sequel_core.orm.registry import Registry
from sequel_core.orm.types import STRING


def test_from_env_prefers_url(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SEQUEL_DB_URL", "sqlite+aiosqlite:///app.db")
    monkeypatch.setenv("SEQUEL_DB_ECHO", "true")

    conn = DBConnection.from_env()

    assert conn.url == "sqlite+aiosqlite:///app.db"
    assert conn.echo is True


def test_from_env_builds_postgres_url(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SEQUEL_DB_URL", raising=False)
    monkeypatch.setenv("POSTGRES_HOST", "db")
    monkeypatch.setenv("POSTGRES_PORT", "6543")
    monkeypatch.setenv("POSTGRES_USER", "sequel")
    monkeypatch.setenv("POSTGRES_PASSWORD", "secret")
    monkeypatch.setenv("POSTGRES_DB", "app")

    assert DBConnection.from_env().url == "postgresql+psycopg://sequel:secret@db:6543/app"


def test_from_env_missing_variables(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SEQUEL_DB_URL", raising=False)
    monkeypatch.delenv("POSTGRES_USER", raising=False)

    with pytest.raises(ValueError, match="Missing required database environment variables"):
        DBConnection.from_env()


def test_from_config_url(tmp_path):
    (tmp_path / "db.yaml").write_text("url: sqlite+aiosqlite:///app.db\necho: true\n")

    conn = DBConnection.from_config(tmp_path)

    assert conn.url == "sqlite+aiosqlite:///app.db"
    assert conn.echo is True


def test_from_config_postgres(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("POSTGRES_PASSWORD", raising=False)
    (tmp_path / "db.yaml").write_text("host: db\nport: 5433\nuser: sequel\npassword: pw\ndatabase: app\n")

    assert DBConnection.from_config(tmp_path).url == "postgresql+psycopg://sequel:pw@db:5433/app"

    monkeypatch.setenv("POSTGRES_PASSWORD", "override")
    assert DBConnection.from_config(tmp_path).url == "postgresql+psycopg://sequel:override@db:5433/app"


def test_from_config_missing_password(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("POSTGRES_PASSWORD", raising=False)
    (tmp_path / "db.yaml").write_text("host: db\nuser: sequel\ndatabase: app\n")

    with pytest.raises(ValueError, match="password"):
        DBConnection.from_config(tmp_path)


@pytest.mark.asyncio
async def test_transaction_commits(registry: Registry):
    user = registry.define("user", {"username": STRING})
    await user.sync()

    async with registry.transaction() as tx:
        await user.create({"username": "a"}, transaction=tx)
        await user.create({"username": "b"}, transaction=tx)
        assert await user.count(transaction=tx) == 2

    assert await user.count() == 2


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(registry: Registry):
    user = registry.define("user", {"username": STRING})
    await user.sync()

    with pytest.raises(RuntimeError):
        async with registry.transaction() as tx:
            await user.create({"username": "a"}, transaction=tx)
            raise RuntimeError("boom")

    assert await user.count() == 0


@pytest.mark.asyncio
async def test_closed_transaction_rejects_statements(registry: Registry):
    user = registry.define("user", {"username": STRING})
    await user.sync()

    async with registry.transaction() as tx:
        await tx.rollback()
        with pytest.raises(TransactionNotActiveError):
            await user.create({"username": "a"}, transaction=tx)


@pytest.mark.asyncio
async def test_registry_as_context_manager(db_url: str):
    async with Registry(db_url) as registry:
        user = registry.define("user", {"username": STRING})
        await user.sync()
        await user.create({"username": "a"})

    # a closed connection recreates its engine on demand
    assert await user.count() == 1
    await registry.close()


class _LockedConnection:
    def __init__(self):
        self.closed = False

    async def begin(self):
        raise OperationalError("BEGIN", {}, Exception("database is locked"))

    async def close(self):
        self.closed = True


class _LockedEngine:
    def __init__(self):
        self.connection = _LockedConnection()

    async def connect(self):
        return self.connection


@pytest.mark.asyncio
async def test_transaction_closes_connection_when_begin_fails():
    engine = _LockedEngine()

    with pytest.raises(DatabaseError, match="database is locked"):
        async with Transaction(engine):
            pass

    assert engine.connection.closed
