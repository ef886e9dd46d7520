from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.chain.gateway import ChainGateway
from app.chain.keys import KeyDerivation
from app.constants import DEPOSIT_COUNTER
from app.core.config import settings
from app.core.errors import AccountNotFound, ChainError, RealMoneyDisabled
from app.core.locks import KeyedLock
from app.models.wallet import Account, DerivationCounter, LedgerTransaction
from app.services.ledger_service import Ledger
from app.services.rate_service import RateSource, sats_to_cents

logger = logging.getLogger(__name__)


def _fingerprint(*parts) -> str:
    return hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()


def deposit_key(address: str, value: int, outpoint: str) -> str:
    return _fingerprint(address, value, outpoint)


def watermark_key(address: str, credited_before: int, value: int) -> str:
    # stable while the chain state is unchanged, new for every later inflow
    return _fingerprint(address, f"@{credited_before}", value)


async def next_derivation_index(session: AsyncSession, name: str = DEPOSIT_COUNTER) -> int:
    """Atomically bump the persisted counter and return the new value (first value is 1)."""
    res = await session.execute(
        update(DerivationCounter)
        .where(DerivationCounter.name == name)
        .values(seq=DerivationCounter.seq + 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        session.add(DerivationCounter(name=name, seq=1))
        await session.flush()
        return 1
    return int(await session.scalar(select(DerivationCounter.seq).where(DerivationCounter.name == name)))


class DepositAddresses:
    """Lazily assigns each account one immutable deposit address."""

    def __init__(self, ledger: Ledger, keys: Optional[KeyDerivation], hot_wallet_index: int = settings.HOT_WALLET_INDEX):
        self.ledger = ledger
        self.keys = keys
        self.hot_wallet_index = hot_wallet_index

    async def get_deposit_address(self, account_id: int) -> str:
        acc = await self.ledger.get_account(account_id)
        if acc.deposit_address:
            return acc.deposit_address
        if self.keys is None:
            raise RealMoneyDisabled("real-money deposits are disabled")
        return await self.ledger.retrying(self._assign, account_id)

    async def _assign(self, account_id: int) -> str:
        async with self.ledger.transaction(account_id) as unit:
            current = await unit.session.scalar(select(Account.deposit_address).where(Account.id == account_id))
            if current:
                return current
            index = await next_derivation_index(unit.session)
            while index == self.hot_wallet_index:
                index = await next_derivation_index(unit.session)
            address = self.keys.address_for(index)
            res = await unit.session.execute(
                update(Account)
                .where(Account.id == account_id, Account.deposit_address.is_(None))
                .values(deposit_address=address, deposit_index=index)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                # another worker got there first; its address is the account's address
                stored = await unit.session.scalar(select(Account.deposit_address).where(Account.id == account_id))
                if stored is None:
                    raise AccountNotFound(account_id)
                logger.info("account %s already had a deposit address, index %s left unused", account_id, index)
                return stored
        logger.info("assigned deposit address index=%s to account %s", index, account_id)
        return address


@dataclass
class Inflow:
    key: str
    value: int          # sats
    chain_ref: Optional[str] = None


@dataclass
class ScanReport:
    addresses: int = 0
    credited: List[LedgerTransaction] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class DepositWatcher:

    def __init__(self, ledger: Ledger, gateway: ChainGateway, rates: RateSource):
        self.ledger = ledger
        self.gateway = gateway
        self.rates = rates
        self._locks = KeyedLock()

    async def scan_once(self) -> ScanReport:
        report = ScanReport()
        for account_id, address in await self.ledger.accounts_with_deposit_address():
            report.addresses += 1
            try:
                report.credited.extend(await self.scan_address(account_id, address))
            except ChainError as e:
                # retried on the next scan
                logger.warning("deposit scan skipped %s (account %s): %s", address, account_id, e)
                report.failed.append(address)
            except Exception as e:
                logger.exception("deposit scan failed for %s (account %s): %s", address, account_id, e)
                report.failed.append(address)
        if report.credited or report.failed:
            logger.info("deposit scan: %s addresses, %s credited, %s failed",
                        report.addresses, len(report.credited), len(report.failed))
        return report

    async def scan_address(self, account_id: int, address: str) -> List[LedgerTransaction]:
        async with self._locks.hold(address):
            balance = await self.gateway.get_confirmed_balance(address)
            credited = await self.ledger.credited_deposit_total(address)
            if balance <= credited:
                return []

            inflows = await self._inflows(address, credited, balance - credited)
            rate = await self.rates.eur_per_btc()
            entries = []
            for inflow in inflows:
                cents = sats_to_cents(inflow.value, rate)
                entry = await self.ledger.credit_deposit(
                    account_id,
                    address,
                    chain_amount=inflow.value,
                    amount=cents,
                    idempotency_key=inflow.key,
                    chain_ref=inflow.chain_ref,
                    remark=f"{inflow.value} sats @ {rate} EUR/BTC",
                )
                if entry is not None:
                    logger.warning("deposit credited: account=%s %s sats -> %s cents (%s)",
                                   account_id, inflow.value, cents, inflow.chain_ref or "no outpoint")
                    entries.append(entry)
            return entries

    async def _inflows(self, address: str, credited: int, delta: int) -> List[Inflow]:
        """One inflow per unseen listed output; the unexplained rest as a watermark inflow."""
        history = await self.ledger.credited_inflows(address)
        known = {ref for ref, _ in history if ref}
        # value credited without an outpoint; a listed output of the same value is already covered by it
        covered = [sats for ref, sats in history if ref is None]
        outputs = await self.gateway.list_spendable_outputs(address)

        fresh = []
        for out in sorted(outputs, key=lambda o: (o.tx_ref, o.vout)):
            if out.outpoint in known:
                continue
            if out.value in covered:
                covered.remove(out.value)
                continue
            fresh.append(out)

        inflows: List[Inflow] = []
        remaining = delta
        for out in fresh:
            if out.value <= 0 or out.value > remaining:
                continue
            inflows.append(Inflow(deposit_key(address, out.value, out.outpoint), out.value, out.outpoint))
            remaining -= out.value
            if remaining == 0:
                break
        if remaining > 0:
            inflows.append(Inflow(watermark_key(address, credited + delta - remaining, remaining), remaining))
        return inflows
