
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, BigInteger, Enum, func
from app.constants import BalanceType, Direction, TxKind, TxStatus
from app.db.session import Base, BigIntPK

class Account(Base):
    __tablename__ = "account"
    __mapper_args__ = {"eager_defaults": True}
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    play_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)   # coins
    real_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)   # EUR cents
    deposit_address: Mapped[str | None] = mapped_column(String(128), unique=True)
    deposit_index: Mapped[int | None] = mapped_column(Integer, unique=True)
    last_check_in: Mapped[datetime | None] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

class DerivationCounter(Base):
    __tablename__ = "derivation_counter"
    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    seq: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

class LedgerTransaction(Base):
    """Append-only; rows are only ever inserted and moved pending -> confirmed/failed."""
    __tablename__ = "ledger_transaction"
    __mapper_args__ = {"eager_defaults": True}
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    kind: Mapped[TxKind] = mapped_column(Enum(TxKind, native_enum=False, length=32), nullable=False)
    balance_type: Mapped[BalanceType] = mapped_column(Enum(BalanceType, native_enum=False, length=8), nullable=False)
    direction: Mapped[Direction] = mapped_column(Enum(Direction, native_enum=False, length=8), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[TxStatus] = mapped_column(Enum(TxStatus, native_enum=False, length=16), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)
    address: Mapped[str | None] = mapped_column(String(128), index=True)
    chain_amount: Mapped[int | None] = mapped_column(BigInteger)   # sats
    chain_ref: Mapped[str | None] = mapped_column(String(80))      # txid or txid:vout
    match_id: Mapped[str | None] = mapped_column(String(64))
    withdrawal_id: Mapped[int | None] = mapped_column(BigInteger)
    remark: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
