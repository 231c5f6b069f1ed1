"""SQLAlchemy Core table definitions.

round/hisbet/claim hold finalized history written by the crawler; realbet is the
listener's working table for the open round; failed_epoch quarantines epochs
that repeatedly fail reconstruction.
"""

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

AMOUNT = Numeric(38, 18)
PRICE = Numeric(28, 8)
PAYOUT = Numeric(18, 4)

round_table = Table(
    "round",
    metadata,
    Column("epoch", BigInteger, primary_key=True, autoincrement=False),
    Column("start_ts", String(32)),
    Column("lock_ts", String(32)),
    Column("close_ts", String(32)),
    Column("start_unix", BigInteger),
    Column("lock_unix", BigInteger),
    Column("close_unix", BigInteger),
    Column("lock_price", PRICE),
    Column("close_price", PRICE),
    Column("result", String(4)),
    Column("total_amount", AMOUNT),
    Column("up_amount", AMOUNT),
    Column("down_amount", AMOUNT),
    Column("up_payout", PAYOUT),
    Column("down_payout", PAYOUT),
)

hisbet = Table(
    "hisbet",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("epoch", BigInteger, nullable=False),
    Column("bet_ts", String(32)),
    Column("wallet_address", String(42), nullable=False),
    Column("bet_direction", String(4), nullable=False),
    Column("amount", AMOUNT),
    Column("result", String(4)),
    Column("tx_hash", String(80), nullable=False, unique=True),
    Index("ix_hisbet_epoch", "epoch"),
    Index("ix_hisbet_wallet", "wallet_address"),
)

claim = Table(
    "claim",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("epoch", BigInteger, nullable=False),
    Column("claim_ts", String(32)),
    Column("wallet_address", String(42), nullable=False),
    Column("claim_amount", AMOUNT),
    Column("bet_epoch", BigInteger, nullable=False),
    # The contract pays out a (wallet, epoch) position once
    UniqueConstraint("wallet_address", "bet_epoch", name="uq_claim_wallet_bet_epoch"),
    Index("ix_claim_epoch", "epoch"),
)

realbet = Table(
    "realbet",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("epoch", BigInteger, nullable=False),
    Column("bet_ts", String(32)),
    Column("wallet_address", String(42), nullable=False),
    Column("bet_direction", String(4), nullable=False),
    Column("amount", AMOUNT),
    UniqueConstraint("epoch", "wallet_address", name="uq_realbet_epoch_wallet"),
)

failed_epoch = Table(
    "failed_epoch",
    metadata,
    Column("epoch", BigInteger, primary_key=True, autoincrement=False),
    Column("error_message", Text),
    Column("failure_count", Integer, nullable=False, server_default="1"),
    Column("last_attempt_ts", DateTime(timezone=True), server_default=func.now()),
)
