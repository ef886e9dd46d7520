
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, DateTime, BigInteger, Enum, func
from app.constants import WithdrawalStatus
from app.db.session import Base, BigIntPK

class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_request"
    __mapper_args__ = {"eager_defaults": True}
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)          # EUR cents debited
    destination: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(Enum(WithdrawalStatus, native_enum=False, length=16), nullable=False)
    amount_sats: Mapped[int | None] = mapped_column(BigInteger)
    fee_sats: Mapped[int | None] = mapped_column(BigInteger)
    tx_ref: Mapped[str | None] = mapped_column(String(64))                 # txid, known before broadcast
    raw_tx: Mapped[str | None] = mapped_column(Text)                       # signed hex, kept for rebroadcast
    inputs: Mapped[str | None] = mapped_column(Text)                       # "txid:vout,..." spent by raw_tx
    ledger_tx_id: Mapped[int | None] = mapped_column(BigInteger)
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    error: Mapped[str | None] = mapped_column(String(255))
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
