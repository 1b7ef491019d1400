import psycopg
import pytest

from app.db.helpers import DatabaseError, with_db_retry


@pytest.mark.asyncio
async def test_retries_operational_errors_then_succeeds():
    calls = {"count": 0}

    @with_db_retry(max_retries=3, base_delay=0)
    async def flaky():
        calls["count"] += 1
        if calls["count"] < 3:
            raise psycopg.OperationalError("connection dropped")
        return "ok"

    assert await flaky() == "ok"
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_non_transient_database_error_not_retried():
    calls = {"count": 0}

    @with_db_retry(max_retries=3, base_delay=0)
    async def broken():
        calls["count"] += 1
        raise DatabaseError("constraint violated", operation="execute")

    with pytest.raises(DatabaseError):
        await broken()

    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    calls = {"count": 0}

    @with_db_retry(max_retries=2, base_delay=0)
    async def down():
        calls["count"] += 1
        raise psycopg.OperationalError("server closed the connection")

    with pytest.raises(DatabaseError):
        await down()

    assert calls["count"] == 3
