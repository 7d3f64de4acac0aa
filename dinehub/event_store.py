"""
Status event store

Append-only history of status events per entity, kept in a SQL table.
Optimistic locking: (aggregate_id, version) is unique, so two writers
appending the same version for one entity cannot both succeed.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .errors import ConcurrentAppend, StoreUnavailable

SCHEMA = """
    CREATE TABLE IF NOT EXISTS status_events (
        aggregate_id   VARCHAR(64)  NOT NULL,
        aggregate_type VARCHAR(32)  NOT NULL,
        event_type     VARCHAR(64)  NOT NULL,
        event_data     TEXT         NOT NULL,
        version        INTEGER      NOT NULL,
        created_at     TIMESTAMP    NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
"""


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(SCHEMA))


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    Append one event and return its version.

    The caller commits; a duplicate version surfaces as ConcurrentAppend on
    flush.
    """
    new_version = expected_version + 1
    try:
        await session.execute(
            text("""
                INSERT INTO status_events
                    (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
                VALUES
                    (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
            """),
            {
                "agg_id": aggregate_id,
                "agg_type": aggregate_type,
                "evt_type": event_type,
                "evt_data": json.dumps(event_data, default=str),
                "version": new_version,
                "now": datetime.now(timezone.utc),
            },
        )
    except IntegrityError as e:
        raise ConcurrentAppend(aggregate_type, aggregate_id, new_version) from e
    except OperationalError as e:
        raise StoreUnavailable(f"event store: {e}") from e
    return new_version


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """All events of one aggregate in version order, for replay."""
    try:
        result = await session.execute(
            text("""
                SELECT event_type, event_data, version, created_at
                FROM status_events
                WHERE aggregate_id = :agg_id
                ORDER BY version ASC
            """),
            {"agg_id": aggregate_id},
        )
    except OperationalError as e:
        raise StoreUnavailable(f"event store: {e}") from e
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data) if isinstance(row.event_data, str) else row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
