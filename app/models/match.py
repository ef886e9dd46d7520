
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, DateTime, BigInteger, Enum, func
from app.constants import BalanceType, EscrowState, MatchOutcome
from app.db.session import Base, BigIntPK

class MatchEscrow(Base):
    """Monetary side of a match: escrowed -> settled, nothing else."""
    __tablename__ = "match_escrow"
    __mapper_args__ = {"eager_defaults": True}
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    match_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    account_a: Mapped[int] = mapped_column(BigInteger, nullable=False)
    account_b: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_type: Mapped[BalanceType] = mapped_column(Enum(BalanceType, native_enum=False, length=8), nullable=False)
    stake: Mapped[int] = mapped_column(BigInteger, nullable=False)
    state: Mapped[EscrowState] = mapped_column(Enum(EscrowState, native_enum=False, length=16), nullable=False)
    outcome: Mapped[MatchOutcome | None] = mapped_column(Enum(MatchOutcome, native_enum=False, length=16))
    fee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    settled_at: Mapped[datetime | None] = mapped_column(DateTime)
