from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from trustguard.trust.infra.cluster_repo import PostgresSnapshotWriter

AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


class RecordingConnection:
    def __init__(self, *, fail_on: str | None = None) -> None:
        self.log: list[str] = []
        self._fail_on = fail_on

    def _record(self, sql: str) -> None:
        statement = " ".join(sql.split())
        if self._fail_on and self._fail_on in statement:
            raise RuntimeError("statement rejected")
        self.log.append(statement)

    @asynccontextmanager
    async def transaction(self):
        self.log.append("BEGIN")
        try:
            yield
        except Exception:
            self.log.append("ROLLBACK")
            raise
        self.log.append("COMMIT")

    async def execute(self, sql, *args):
        self._record(sql)
        return "OK"

    async def executemany(self, sql, rows):
        self._record(sql)

    async def fetch(self, sql, *args):
        self._record(sql)
        return []


class SingleConnectionPool:
    def __init__(self, conn: RecordingConnection) -> None:
        self.conn = conn
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn


@pytest.mark.asyncio
async def test_scores_and_clusters_share_one_transaction() -> None:
    conn = RecordingConnection()
    pool = SingleConnectionPool(conn)

    applied = await PostgresSnapshotWriter(pool).commit("", {"did:plc:alice": 0.5}, [], at=AT)

    assert applied == []
    assert pool.acquired == 1
    assert conn.log[0] == "BEGIN"
    assert conn.log[-1] == "COMMIT"
    assert conn.log.count("BEGIN") == 1
    assert any(statement.startswith("INSERT INTO trust_scores") for statement in conn.log)
    assert any(statement.startswith("DELETE FROM sybil_clusters") for statement in conn.log)


@pytest.mark.asyncio
async def test_cluster_failure_rolls_back_the_score_swap() -> None:
    conn = RecordingConnection(fail_on="FROM sybil_clusters WHERE cluster_hash")
    pool = SingleConnectionPool(conn)

    with pytest.raises(RuntimeError):
        await PostgresSnapshotWriter(pool).commit("", {"did:plc:alice": 0.5}, [], at=AT)

    assert "COMMIT" not in conn.log
    assert conn.log[-1] == "ROLLBACK"
    assert any(statement.startswith("DELETE FROM trust_scores") for statement in conn.log)
