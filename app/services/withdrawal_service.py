from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Set

from sqlalchemy import and_, or_, select, update

from app.chain.gateway import ChainGateway
from app.chain.keys import KeyDerivation
from app.chain.tx_builder import TransactionBuilder
from app.constants import BalanceType, OPEN_WITHDRAWAL_STATUSES, TxKind, TxStatus, WithdrawalStatus
from app.core.config import settings
from app.core.errors import (
    BroadcastOutcomeUnknown, ChainError, ChainRejected, ConcurrencyConflict, InsufficientFunds, InvalidAmount,
    WithdrawalFailed,
)
from app.core.locks import KeyedLock
from app.core.timeutil import utcnow
from app.models.withdrawal import WithdrawalRequest
from app.services.ledger_service import Ledger
from app.services.rate_service import RateSource, cents_to_sats, sats_to_cents

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    checked: int = 0
    confirmed: List[int] = field(default_factory=list)
    refunded: List[int] = field(default_factory=list)
    pending: List[int] = field(default_factory=list)


@dataclass
class HotWalletStatus:
    address: str
    confirmed_sats: int
    eur_per_btc: Decimal
    value_cents: int


class WithdrawalOrchestrator:

    def __init__(
        self,
        ledger: Ledger,
        keys: KeyDerivation,
        builder: TransactionBuilder,
        gateway: ChainGateway,
        rates: RateSource,
        hot_wallet_index: int = settings.HOT_WALLET_INDEX,
        min_withdrawal: int = settings.MIN_WITHDRAWAL,
        grace_seconds: int = settings.RECONCILE_GRACE_SECONDS,
        spent_hold_seconds: int = settings.SPENT_OUTPUT_HOLD_SECONDS,
    ):
        self.ledger = ledger
        self.keys = keys
        self.builder = builder
        self.gateway = gateway
        self.rates = rates
        self.hot_wallet_index = hot_wallet_index
        self.min_withdrawal = min_withdrawal
        self.grace_seconds = grace_seconds
        self.spent_hold_seconds = spent_hold_seconds
        self._locks = KeyedLock()

    async def get(self, request_id: int) -> Optional[WithdrawalRequest]:
        async with self.ledger.session_factory() as session:
            return await session.get(WithdrawalRequest, request_id)

    async def list_for_account(self, account_id: int, limit: int = 20) -> List[WithdrawalRequest]:
        async with self.ledger.session_factory() as session:
            rs = await session.execute(
                select(WithdrawalRequest)
                .where(WithdrawalRequest.account_id == account_id)
                .order_by(WithdrawalRequest.id.desc())
                .limit(limit)
            )
            return list(rs.scalars().all())

    async def hot_wallet_status(self) -> HotWalletStatus:
        address = self.keys.address_for(self.hot_wallet_index)
        sats = await self.gateway.get_confirmed_balance(address)
        rate = await self.rates.eur_per_btc()
        return HotWalletStatus(address, sats, rate, sats_to_cents(sats, rate))

    async def request_withdrawal(self, account_id: int, amount: int, destination: str) -> WithdrawalRequest:
        """
        Pay `amount` EUR cents out of the account to `destination`.

        Returns the request in `confirmed` state, or in `broadcast` state when
        the provider's answer was lost (reconciliation settles it later).
        Raises InsufficientFunds before anything is debited, and
        WithdrawalFailed only after the refund has been committed.
        """
        if amount < self.min_withdrawal:
            raise InvalidAmount(f"minimum withdrawal is {self.min_withdrawal}")
        destination = destination.strip()
        self.keys.script_for_address(destination)

        request_id = await self.ledger.retrying(self._open_request, account_id, amount, destination, uuid.uuid4().hex)
        logger.info("withdrawal %s: debited %s cents from account %s", request_id, amount, account_id)

        # one spend from the hot wallet at a time, so no two requests pick the same outputs
        async with self._locks.hold(self.hot_wallet_index):
            return await self._send(request_id, amount, destination)

    async def _open_request(self, account_id: int, amount: int, destination: str, key: str) -> int:
        # the request row rides in the same transaction as the debit
        async with self.ledger.transaction(account_id) as unit:
            entry = await unit.debit(
                account_id, BalanceType.REAL, amount, TxKind.WITHDRAWAL,
                status=TxStatus.PENDING, idempotency_key=key, address=destination,
                remark=f"withdrawal to {destination}",
            )
            req = WithdrawalRequest(
                account_id=account_id,
                amount=amount,
                destination=destination,
                status=WithdrawalStatus.BUILDING,
                ledger_tx_id=entry.id,
                idempotency_key=key,
                status_changed_at=utcnow(),
            )
            unit.session.add(req)
            await unit.session.flush()
            entry.withdrawal_id = req.id
            return req.id

    async def _send(self, request_id: int, amount: int, destination: str) -> WithdrawalRequest:
        try:
            rate = await self.rates.eur_per_btc()
            sats = cents_to_sats(amount, rate)
            reserved = await self.reserved_outputs()
            signed = await self.builder.build(self.hot_wallet_index, destination, sats, exclude=reserved)
        except (InsufficientFunds, InvalidAmount, ChainError) as e:
            logger.warning("withdrawal %s: build failed: %s", request_id, e)
            refunded = await self.refund(request_id, f"build failed: {e}")
            raise WithdrawalFailed(refunded, e) from e

        # the txid is persisted before broadcasting so an unknown outcome can be looked up
        stored = await self._update(
            request_id, (WithdrawalStatus.BUILDING,),
            amount_sats=sats, fee_sats=signed.fee, tx_ref=signed.txid, raw_tx=signed.hex,
            inputs=",".join(o.outpoint for o in signed.selection.inputs),
        )
        if not stored:
            # another worker closed the request meanwhile; the signed transaction is dropped unsent
            req = await self.get(request_id)
            logger.warning("withdrawal %s closed as %s while building, not broadcasting %s",
                           request_id, req.status.value, signed.txid)
            raise WithdrawalFailed(req, ConcurrencyConflict(f"withdrawal {request_id} was closed while building"))

        try:
            tx_ref = await self.gateway.broadcast(signed.raw)
        except BroadcastOutcomeUnknown as e:
            logger.warning("withdrawal %s: broadcast outcome unknown for %s, left for reconciliation: %s",
                           request_id, signed.txid, e)
            await self._update(request_id, (WithdrawalStatus.BUILDING,), status=WithdrawalStatus.BROADCAST)
            return await self.get(request_id)
        except ChainError as e:
            logger.warning("withdrawal %s: broadcast failed: %s", request_id, e)
            refunded = await self.refund(request_id, f"broadcast failed: {e}")
            raise WithdrawalFailed(refunded, e) from e

        return await self.confirm(request_id, tx_ref or signed.txid)

    async def reserved_outputs(self) -> Set[str]:
        """Outpoints spent by open withdrawals or by ones confirmed within the hold period."""
        since = utcnow() - timedelta(seconds=self.spent_hold_seconds)
        async with self.ledger.session_factory() as session:
            rs = await session.execute(
                select(WithdrawalRequest.inputs).where(
                    WithdrawalRequest.inputs.is_not(None),
                    or_(
                        WithdrawalRequest.status.in_(OPEN_WITHDRAWAL_STATUSES),
                        and_(WithdrawalRequest.status == WithdrawalStatus.CONFIRMED,
                             WithdrawalRequest.status_changed_at >= since),
                    ),
                )
            )
            rows = list(rs.scalars().all())
        return {outpoint for inputs in rows for outpoint in inputs.split(",") if outpoint}

    async def _update(self, request_id: int, from_states, **values) -> bool:
        if "status" in values:
            values["status_changed_at"] = utcnow()
        async with self.ledger.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(WithdrawalRequest)
                    .where(WithdrawalRequest.id == request_id, WithdrawalRequest.status.in_(from_states))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        return res.rowcount == 1

    async def confirm(self, request_id: int, tx_ref: str) -> WithdrawalRequest:
        req = await self.get(request_id)
        if await self.ledger.retrying(self._confirm, req, tx_ref):
            logger.warning("withdrawal %s confirmed: %s cents -> %s (tx %s)",
                           request_id, req.amount, req.destination, tx_ref)
        return await self.get(request_id)

    async def _confirm(self, req: WithdrawalRequest, tx_ref: str) -> bool:
        async with self.ledger.transaction(req.account_id) as unit:
            res = await unit.session.execute(
                update(WithdrawalRequest)
                .where(WithdrawalRequest.id == req.id, WithdrawalRequest.status.in_(OPEN_WITHDRAWAL_STATUSES))
                .values(status=WithdrawalStatus.CONFIRMED, tx_ref=tx_ref, status_changed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1 and req.ledger_tx_id:
                await unit.set_entry_status(req.ledger_tx_id, TxStatus.CONFIRMED, chain_ref=tx_ref,
                                            chain_amount=req.amount_sats)
            return res.rowcount == 1

    async def refund(self, request_id: int, reason: str) -> WithdrawalRequest:
        """Credit the debited amount back exactly once and close the request as failed-refunded."""
        req = await self.get(request_id)
        if await self.ledger.retrying(self._refund, req, reason):
            logger.warning("withdrawal %s refunded %s cents to account %s: %s",
                           request_id, req.amount, req.account_id, reason)
        return await self.get(request_id)

    async def _refund(self, req: WithdrawalRequest, reason: str) -> bool:
        async with self.ledger.transaction(req.account_id) as unit:
            res = await unit.session.execute(
                update(WithdrawalRequest)
                .where(WithdrawalRequest.id == req.id, WithdrawalRequest.status.in_(OPEN_WITHDRAWAL_STATUSES))
                .values(status=WithdrawalStatus.FAILED_REFUNDED, error=reason[:255], status_changed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                await unit.credit(req.account_id, BalanceType.REAL, req.amount, TxKind.WITHDRAWAL_REFUND,
                                  withdrawal_id=req.id, remark=f"refund of withdrawal {req.id}")
                if req.ledger_tx_id:
                    await unit.set_entry_status(req.ledger_tx_id, TxStatus.FAILED)
            return res.rowcount == 1

    # ------------------------------
    # reconciliation
    # ------------------------------
    async def reconcile_pending(self) -> ReconcileReport:
        """
        Settle withdrawals stuck in building/broadcast. Only a definite
        rejection of the stored transaction leads to a refund.
        """
        cutoff = utcnow() - timedelta(seconds=self.grace_seconds)
        async with self.ledger.session_factory() as session:
            rs = await session.execute(
                select(WithdrawalRequest.id)
                .where(WithdrawalRequest.status.in_((WithdrawalStatus.BUILDING, WithdrawalStatus.BROADCAST)),
                       WithdrawalRequest.status_changed_at <= cutoff)
                .order_by(WithdrawalRequest.id.asc())
            )
            ids = list(rs.scalars().all())

        report = ReconcileReport()
        for request_id in ids:
            report.checked += 1
            try:
                async with self._locks.hold(self.hot_wallet_index):
                    req = await self._reconcile_one(request_id)
            except ChainError as e:
                logger.warning("reconcile withdrawal %s deferred: %s", request_id, e)
                report.pending.append(request_id)
                continue
            except Exception as e:
                logger.exception("reconcile withdrawal %s failed: %s", request_id, e)
                report.pending.append(request_id)
                continue
            if req.status == WithdrawalStatus.CONFIRMED:
                report.confirmed.append(request_id)
            elif req.status == WithdrawalStatus.FAILED_REFUNDED:
                report.refunded.append(request_id)
            else:
                report.pending.append(request_id)
        return report

    async def _reconcile_one(self, request_id: int) -> WithdrawalRequest:
        req = await self.get(request_id)
        if req.status not in (WithdrawalStatus.BUILDING, WithdrawalStatus.BROADCAST):
            return req
        if not req.raw_tx or not req.tx_ref:
            # never signed, so nothing can have reached the network
            return await self.refund(request_id, "abandoned before signing")

        found = await self.gateway.get_transaction(req.tx_ref)
        if found is not None:
            return await self.confirm(request_id, found.tx_ref)

        try:
            tx_ref = await self.gateway.broadcast(bytes.fromhex(req.raw_tx))
        except ChainRejected as e:
            return await self.refund(request_id, f"rebroadcast rejected: {e}")
        except BroadcastOutcomeUnknown as e:
            logger.warning("withdrawal %s: rebroadcast outcome unknown: %s", request_id, e)
            await self._update(request_id, (WithdrawalStatus.BUILDING,), status=WithdrawalStatus.BROADCAST)
            return await self.get(request_id)
        return await self.confirm(request_id, tx_ref or req.tx_ref)
