"""Statement builders for the indexer tables.

Every write that can be repeated is conflict tolerant so the main line, the
branch line and the listener can race without locks. PostgreSQL and SQLite
share the same ON CONFLICT syntax, only the insert construct differs.
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.sql import Executable

from prediction_indexer.models import Claim, FailedEpoch, HistoricalBet, InFlightBet, Round
from prediction_indexer.persistence.schema import (
    claim,
    failed_epoch,
    hisbet,
    realbet,
    round_table,
)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _insert(dialect: str, table):
    try:
        return _INSERTS[dialect](table)
    except KeyError:
        raise ValueError(f"unsupported dialect for conflict-tolerant writes: {dialect}") from None


def insert_round(dialect: str, rnd: Round) -> Executable:
    return _insert(dialect, round_table).values(**rnd.as_row()).on_conflict_do_nothing(
        index_elements=["epoch"]
    )


def insert_bets(dialect: str, bets: Iterable[HistoricalBet]) -> list[Executable]:
    return [
        _insert(dialect, hisbet).values(**bet.as_row()).on_conflict_do_nothing(
            index_elements=["tx_hash"]
        )
        for bet in bets
    ]


def insert_claims(dialect: str, claims: Iterable[Claim]) -> list[Executable]:
    return [
        _insert(dialect, claim).values(**c.as_row()).on_conflict_do_nothing(
            index_elements=["wallet_address", "bet_epoch"]
        )
        for c in claims
    ]


def upsert_realbet(dialect: str, bet: InFlightBet) -> Executable:
    stmt = _insert(dialect, realbet).values(**bet.as_row())
    return stmt.on_conflict_do_update(
        index_elements=["epoch", "wallet_address"],
        set_={
            "bet_ts": stmt.excluded.bet_ts,
            "bet_direction": stmt.excluded.bet_direction,
            "amount": stmt.excluded.amount,
        },
    )


def record_failed_epoch(dialect: str, record: FailedEpoch) -> Executable:
    stmt = _insert(dialect, failed_epoch).values(
        epoch=record.epoch,
        error_message=record.error_message,
        failure_count=record.failure_count,
        last_attempt_ts=record.last_attempt_ts or func.now(),
    )
    return stmt.on_conflict_do_update(
        index_elements=["epoch"],
        set_={
            "error_message": stmt.excluded.error_message,
            "last_attempt_ts": func.now(),
            "failure_count": failed_epoch.c.failure_count + 1,
        },
    )


def select_round_epoch(epoch: int) -> Executable:
    return select(round_table.c.epoch).where(round_table.c.epoch == epoch)


def select_failure_count(epoch: int) -> Executable:
    return select(failed_epoch.c.failure_count).where(failed_epoch.c.epoch == epoch)


def delete_round(epoch: int) -> Executable:
    return delete(round_table).where(round_table.c.epoch == epoch)


def delete_realbets(epoch: int) -> Executable:
    return delete(realbet).where(realbet.c.epoch == epoch)
