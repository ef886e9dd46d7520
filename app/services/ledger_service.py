from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import AsyncIterator, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.constants import (
    BalanceType, Direction, EscrowState, MatchOutcome, OPEN_WITHDRAWAL_STATUSES, TxKind, TxStatus,
)
from app.core.config import settings
from app.core.errors import (
    AccountNotFound, CheckInNotAvailable, ConcurrencyConflict, InsufficientFunds, InvalidAmount, MatchStateError,
)
from app.core.locks import KeyedLock
from app.core.timeutil import to_naive, utcnow
from app.models.match import MatchEscrow
from app.models.wallet import Account, LedgerTransaction
from app.models.withdrawal import WithdrawalRequest

logger = logging.getLogger(__name__)

CHECK_IN_PERIOD = timedelta(hours=24)

_BALANCE_COLUMNS = {
    BalanceType.PLAY: Account.play_balance,
    BalanceType.REAL: Account.real_balance,
}


def platform_fee(pot: int, percent: Decimal) -> int:
    """Fee on a pot, rounded down to the balance's minimum unit."""
    return int((Decimal(pot) * Decimal(percent) / 100).to_integral_value(rounding=ROUND_FLOOR))


def _check_amount(amount: int, allow_zero: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an integer number of minor units, got {amount!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount(f"amount must be positive, got {amount}")
    return amount


def _is_conflict(e: OperationalError) -> bool:
    msg = str(getattr(e, "orig", e)).lower()
    return "locked" in msg or "deadlock" in msg or "lock wait" in msg


@dataclass
class Balances:
    play_money: int
    real_money: int


@dataclass
class PlatformTotals:
    accounts: int
    play_money: int
    real_money: int
    confirmed_deposits: int
    open_withdrawals: int


class LedgerUnit:

    def __init__(self, session: AsyncSession, account_ids: Iterable[int]):
        self.session = session
        self._locked = frozenset(account_ids)

    def _check_locked(self, account_id: int) -> None:
        if account_id not in self._locked:
            raise RuntimeError(f"account {account_id} is not locked by this ledger unit")

    async def balance_of(self, account_id: int, balance_type: BalanceType) -> Optional[int]:
        col = _BALANCE_COLUMNS[balance_type]
        return await self.session.scalar(select(col).where(Account.id == account_id))

    async def _move(self, account_id: int, balance_type: BalanceType, delta: int) -> int:
        self._check_locked(account_id)
        col = _BALANCE_COLUMNS[balance_type]
        stmt = update(Account).where(Account.id == account_id)
        if delta < 0:
            stmt = stmt.where(col >= -delta)
        stmt = stmt.values({col: col + delta, Account.version: Account.version + 1})
        res = await self.session.execute(stmt.execution_options(synchronize_session=False))
        balance = await self.balance_of(account_id, balance_type)
        if res.rowcount != 1:
            if balance is None:
                raise AccountNotFound(account_id)
            raise InsufficientFunds(
                f"account {account_id} has {balance} {balance_type.value}, needs {-delta}",
                available=balance,
                needed=-delta,
            )
        return balance

    async def _record(self, account_id: int, balance_type: BalanceType, delta: int, kind: TxKind,
                      balance_after: int, status: TxStatus = TxStatus.CONFIRMED, **fields) -> LedgerTransaction:
        entry = LedgerTransaction(
            account_id=account_id,
            kind=kind,
            balance_type=balance_type,
            direction=Direction.IN if delta >= 0 else Direction.OUT,
            amount=abs(delta),
            balance_after=balance_after,
            status=status,
            **fields,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def credit(self, account_id: int, balance_type: BalanceType, amount: int, kind: TxKind,
                     status: TxStatus = TxStatus.CONFIRMED, allow_zero: bool = False, **fields) -> LedgerTransaction:
        _check_amount(amount, allow_zero=allow_zero)
        after = await self._move(account_id, balance_type, amount)
        return await self._record(account_id, balance_type, amount, kind, after, status, **fields)

    async def debit(self, account_id: int, balance_type: BalanceType, amount: int, kind: TxKind,
                    status: TxStatus = TxStatus.CONFIRMED, **fields) -> LedgerTransaction:
        _check_amount(amount)
        after = await self._move(account_id, balance_type, -amount)
        return await self._record(account_id, balance_type, -amount, kind, after, status, **fields)

    async def set_entry_status(self, entry_id: int, status: TxStatus, **fields) -> None:
        await self.session.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.id == entry_id)
            .values(status=status, **fields)
            .execution_options(synchronize_session=False)
        )


class Ledger:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        real_fee_percent: Decimal = settings.PLATFORM_FEE_PERCENT,
        play_fee_percent: Decimal = settings.PLAY_FEE_PERCENT,
        starting_play_balance: int = settings.STARTING_PLAY_BALANCE,
        daily_play_bonus: int = settings.DAILY_PLAY_BONUS,
        conflict_retries: int = settings.CONFLICT_RETRIES,
    ):
        self.session_factory = session_factory
        self.fee_percent = {BalanceType.REAL: Decimal(real_fee_percent), BalanceType.PLAY: Decimal(play_fee_percent)}
        self.starting_play_balance = starting_play_balance
        self.daily_play_bonus = daily_play_bonus
        self.conflict_retries = max(int(conflict_retries), 1)
        self._locks = KeyedLock()

    @asynccontextmanager
    async def transaction(self, *account_ids: int) -> AsyncIterator[LedgerUnit]:
        async with self._locks.hold(*account_ids):
            async with self.session_factory() as session:
                async with session.begin():
                    yield LedgerUnit(session, account_ids)

    async def retrying(self, op, *args, **kwargs):
        """Run `op` again after a lock conflict, at most `conflict_retries` times in total."""
        name = getattr(op, "__name__", "ledger operation")
        last: Optional[OperationalError] = None
        for attempt in range(1, self.conflict_retries + 1):
            try:
                return await op(*args, **kwargs)
            except OperationalError as e:
                if not _is_conflict(e):
                    raise
                last = e
                logger.warning("ledger conflict in %s (attempt %s/%s): %s",
                               name, attempt, self.conflict_retries, getattr(e, "orig", e))
        raise ConcurrencyConflict(f"{name} failed after {self.conflict_retries} attempts") from last

    # ------------------------------
    # accounts
    # ------------------------------
    async def open_account(self, user_id: str) -> Account:
        existing = await self.get_account_by_user(user_id)
        if existing:
            return existing
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    acc = Account(user_id=user_id, play_balance=0, real_balance=0, version=0)
                    session.add(acc)
                    await session.flush()
                    account_id = acc.id
                    if self.starting_play_balance > 0:
                        unit = LedgerUnit(session, [account_id])
                        await unit.credit(account_id, BalanceType.PLAY, self.starting_play_balance,
                                          TxKind.SIGNUP_GRANT, remark="starting play-money grant")
        except IntegrityError:
            # opened concurrently for the same user
            existing = await self.get_account_by_user(user_id)
            if existing is None:
                raise
            return existing
        logger.info("opened account %s for user %s", account_id, user_id)
        return await self.get_account(account_id)

    async def get_account(self, account_id: int) -> Account:
        async with self.session_factory() as session:
            acc = await session.get(Account, account_id)
        if acc is None:
            raise AccountNotFound(account_id)
        return acc

    async def get_account_by_user(self, user_id: str) -> Optional[Account]:
        async with self.session_factory() as session:
            return await session.scalar(select(Account).where(Account.user_id == user_id))

    async def get_balances(self, account_id: int) -> Balances:
        acc = await self.get_account(account_id)
        return Balances(play_money=int(acc.play_balance), real_money=int(acc.real_balance))

    # ------------------------------
    # plain balance operations
    # ------------------------------
    async def _credit(self, account_id, balance_type, amount, kind, remark):
        async with self.transaction(account_id) as unit:
            return await unit.credit(account_id, balance_type, amount, kind, remark=remark)

    async def credit(self, account_id: int, balance_type: BalanceType, amount: int,
                     kind: TxKind = TxKind.ADMIN_ADJUSTMENT, reason: Optional[str] = None) -> LedgerTransaction:
        return await self.retrying(self._credit, account_id, BalanceType(balance_type), amount, kind, reason)

    async def _debit(self, account_id, balance_type, amount, kind, remark):
        async with self.transaction(account_id) as unit:
            return await unit.debit(account_id, balance_type, amount, kind, remark=remark)

    async def debit(self, account_id: int, balance_type: BalanceType, amount: int,
                    kind: TxKind = TxKind.ADMIN_ADJUSTMENT, reason: Optional[str] = None) -> LedgerTransaction:
        return await self.retrying(self._debit, account_id, BalanceType(balance_type), amount, kind, reason)

    async def adjust_balance(self, account_id: int, balance_type: BalanceType, delta: int, reason: str) -> LedgerTransaction:
        """Manual correction from operational tooling; a negative delta still cannot overdraw."""
        if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
            raise InvalidAmount("adjustment delta must be a non-zero integer")
        remark = f"admin: {reason}"[:255]
        logger.warning("admin adjustment account=%s type=%s delta=%s reason=%s",
                       account_id, BalanceType(balance_type).value, delta, reason)
        if delta > 0:
            return await self.credit(account_id, balance_type, delta, TxKind.ADMIN_ADJUSTMENT, remark)
        return await self.debit(account_id, balance_type, -delta, TxKind.ADMIN_ADJUSTMENT, remark)

    async def _claim_daily_bonus(self, account_id, now):
        async with self.transaction(account_id) as unit:
            res = await unit.session.execute(
                update(Account)
                .where(Account.id == account_id,
                       or_(Account.last_check_in.is_(None), Account.last_check_in <= now - CHECK_IN_PERIOD))
                .values(last_check_in=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                last = await unit.session.scalar(select(Account.last_check_in).where(Account.id == account_id))
                if last is None:
                    raise AccountNotFound(account_id)
                raise CheckInNotAvailable(last + CHECK_IN_PERIOD)
            return await unit.credit(account_id, BalanceType.PLAY, self.daily_play_bonus, TxKind.DAILY_BONUS,
                                     remark="daily check-in")

    async def claim_daily_bonus(self, account_id: int, now: Optional[datetime] = None) -> LedgerTransaction:
        return await self.retrying(self._claim_daily_bonus, account_id, to_naive(now) if now else utcnow())

    # ------------------------------
    # match escrow
    # ------------------------------
    async def _escrow_stake(self, match_id, account_a, account_b, balance_type, stake):
        try:
            async with self.transaction(account_a, account_b) as unit:
                seen = await unit.session.scalar(select(MatchEscrow.id).where(MatchEscrow.match_id == match_id))
                if seen:
                    raise MatchStateError(f"match {match_id} is already escrowed")
                # debit in lock order; the second failing rolls back the first
                for account_id in sorted((account_a, account_b)):
                    await unit.debit(account_id, balance_type, stake, TxKind.STAKE_ESCROW,
                                     match_id=match_id, remark=f"stake for match {match_id}")
                escrow = MatchEscrow(
                    match_id=match_id,
                    account_a=account_a,
                    account_b=account_b,
                    balance_type=balance_type,
                    stake=stake,
                    state=EscrowState.ESCROWED,
                    fee=0,
                )
                unit.session.add(escrow)
                await unit.session.flush()
                return escrow
        except IntegrityError as e:
            raise MatchStateError(f"match {match_id} is already escrowed") from e

    async def escrow_stake(self, match_id: str, account_a: int, account_b: int,
                           balance_type: BalanceType, stake: int) -> MatchEscrow:
        """Debit `stake` from both players or from neither."""
        _check_amount(stake)
        if account_a == account_b:
            raise MatchStateError("a match needs two different accounts")
        escrow = await self.retrying(self._escrow_stake, match_id, account_a, account_b, BalanceType(balance_type), stake)
        logger.info("escrowed match %s: %s x2 %s from accounts %s/%s",
                    match_id, stake, escrow.balance_type.value, account_a, account_b)
        return escrow

    async def get_escrow(self, match_id: str) -> Optional[MatchEscrow]:
        async with self.session_factory() as session:
            return await session.scalar(select(MatchEscrow).where(MatchEscrow.match_id == match_id))

    def payout_for(self, escrow: MatchEscrow, outcome: MatchOutcome) -> List[Tuple[int, int, TxKind]]:
        if outcome == MatchOutcome.DRAW:
            return [
                (escrow.account_a, escrow.stake, TxKind.STAKE_REFUND),
                (escrow.account_b, escrow.stake, TxKind.STAKE_REFUND),
            ]
        # a forfeit is an ordinary win for the other side, fee included
        winner = escrow.account_a if outcome in (MatchOutcome.A_WINS, MatchOutcome.FORFEIT_B) else escrow.account_b
        pot = 2 * escrow.stake
        fee = platform_fee(pot, self.fee_percent[escrow.balance_type])
        return [(winner, pot - fee, TxKind.STAKE_PAYOUT)]

    async def _settle_match(self, match_id, outcome):
        escrow = await self.get_escrow(match_id)
        if escrow is None:
            raise MatchStateError(f"match {match_id} was never escrowed")
        credits = self.payout_for(escrow, outcome)
        fee = 2 * escrow.stake - sum(amount for _, amount, _ in credits)

        async with self.transaction(escrow.account_a, escrow.account_b) as unit:
            # escrowed -> settled exactly once
            res = await unit.session.execute(
                update(MatchEscrow)
                .where(MatchEscrow.match_id == match_id, MatchEscrow.state == EscrowState.ESCROWED)
                .values(state=EscrowState.SETTLED, outcome=outcome, fee=fee, settled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise MatchStateError(f"match {match_id} is already settled")
            for account_id, amount, kind in credits:
                if amount > 0:
                    await unit.credit(account_id, escrow.balance_type, amount, kind,
                                      match_id=match_id, remark=f"{outcome.value} in match {match_id}")
        return await self.get_escrow(match_id)

    async def settle_match(self, match_id: str, outcome: MatchOutcome) -> MatchEscrow:
        escrow = await self.retrying(self._settle_match, match_id, MatchOutcome(outcome))
        logger.info("settled match %s: outcome=%s fee=%s", match_id, escrow.outcome.value, escrow.fee)
        return escrow

    # ------------------------------
    # history
    # ------------------------------
    async def list_transactions(self, account_id: int, limit: int = 20, before_id: Optional[int] = None) -> List[LedgerTransaction]:
        limit = max(1, min(int(limit), 200))
        stmt = select(LedgerTransaction).where(LedgerTransaction.account_id == account_id)
        if before_id is not None:
            stmt = stmt.where(LedgerTransaction.id < before_id)
        async with self.session_factory() as session:
            rs = await session.execute(stmt.order_by(LedgerTransaction.id.desc()).limit(limit))
            return list(rs.scalars().all())

    # ------------------------------
    # deposits
    # ------------------------------
    async def accounts_with_deposit_address(self) -> List[Tuple[int, str]]:
        async with self.session_factory() as session:
            rs = await session.execute(
                select(Account.id, Account.deposit_address)
                .where(Account.deposit_address.is_not(None))
                .order_by(Account.id.asc())
            )
            return [(int(i), str(a)) for i, a in rs.all()]

    def _deposits_for(self, address: str):
        return (
            LedgerTransaction.kind == TxKind.DEPOSIT,
            LedgerTransaction.address == address,
            LedgerTransaction.status == TxStatus.CONFIRMED,
        )

    async def credited_deposit_total(self, address: str) -> int:
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(LedgerTransaction.chain_amount), 0)).where(*self._deposits_for(address))
            )
        return int(total or 0)

    async def credited_inflows(self, address: str) -> List[Tuple[Optional[str], int]]:
        """(outpoint, sats) of every credited deposit; outpoint is None for watermark credits."""
        async with self.session_factory() as session:
            rs = await session.execute(
                select(LedgerTransaction.chain_ref, LedgerTransaction.chain_amount)
                .where(*self._deposits_for(address))
                .order_by(LedgerTransaction.id.asc())
            )
            return [(str(ref) if ref is not None else None, int(sats or 0)) for ref, sats in rs.all()]

    async def _credit_deposit(self, account_id, address, chain_amount, amount, key, chain_ref, remark):
        try:
            async with self.transaction(account_id) as unit:
                seen = await unit.session.scalar(
                    select(LedgerTransaction.id).where(LedgerTransaction.idempotency_key == key)
                )
                if seen:
                    return None
                # the pending row claims the key before any balance moves
                entry = await unit._record(
                    account_id, BalanceType.REAL, amount, TxKind.DEPOSIT, balance_after=0, status=TxStatus.PENDING,
                    idempotency_key=key, address=address, chain_amount=chain_amount, chain_ref=chain_ref, remark=remark,
                )
                entry.balance_after = await unit._move(account_id, BalanceType.REAL, amount)
                entry.status = TxStatus.CONFIRMED
                await unit.session.flush()
                return entry
        except IntegrityError:
            logger.info("deposit %s already credited concurrently", key)
            return None

    async def credit_deposit(self, account_id: int, address: str, chain_amount: int, amount: int,
                             idempotency_key: str, chain_ref: Optional[str] = None,
                             remark: Optional[str] = None) -> Optional[LedgerTransaction]:
        """
        Credit one on-chain inflow at most once. Returns None when the
        idempotency key has already produced a credit.
        """
        _check_amount(chain_amount)
        _check_amount(amount, allow_zero=True)
        return await self.retrying(self._credit_deposit, account_id, address, chain_amount, amount,
                                    idempotency_key, chain_ref, remark)

    # ------------------------------
    # reporting
    # ------------------------------
    async def totals(self) -> PlatformTotals:
        async with self.session_factory() as session:
            accounts, play, real = (await session.execute(
                select(func.count(Account.id),
                       func.coalesce(func.sum(Account.play_balance), 0),
                       func.coalesce(func.sum(Account.real_balance), 0))
            )).one()
            deposits = await session.scalar(
                select(func.count(LedgerTransaction.id))
                .where(LedgerTransaction.kind == TxKind.DEPOSIT, LedgerTransaction.status == TxStatus.CONFIRMED)
            )
            open_withdrawals = await session.scalar(
                select(func.count(WithdrawalRequest.id)).where(WithdrawalRequest.status.in_(OPEN_WITHDRAWAL_STATUSES))
            )
        return PlatformTotals(
            accounts=int(accounts or 0),
            play_money=int(play or 0),
            real_money=int(real or 0),
            confirmed_deposits=int(deposits or 0),
            open_withdrawals=int(open_withdrawals or 0),
        )
