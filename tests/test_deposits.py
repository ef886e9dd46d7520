import asyncio
import unittest
from unittest.mock import patch

from sqlalchemy import update

from app.chain.keys import KeyDerivation
from app.constants import DEPOSIT_COUNTER, BalanceType, TxKind, TxStatus
from app.core.errors import RateUnavailable, RealMoneyDisabled
from app.models.wallet import Account
from app.services.deposit_service import (
    DepositAddresses, DepositWatcher, deposit_key, next_derivation_index, watermark_key,
)
from app.services.rate_service import FixedRateSource

from support import RATE, TEST_MNEMONIC, FakeChainGateway, LedgerTestCase, txid


class FlakyRates:
    def __init__(self):
        self.down = True

    async def eur_per_btc(self):
        if self.down:
            raise RateUnavailable("oracle down")
        return RATE


class DepositAddressTest(LedgerTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.keys = KeyDerivation(TEST_MNEMONIC)
        self.addresses = DepositAddresses(self.ledger, self.keys, hot_wallet_index=0)

    async def test_address_is_assigned_once(self):
        a = await self.open_account("a")
        first = await self.addresses.get_deposit_address(a)
        self.assertEqual(first, await self.addresses.get_deposit_address(a))
        acc = await self.ledger.get_account(a)
        self.assertEqual((acc.deposit_address, acc.deposit_index), (first, 1))
        self.assertEqual(first, self.keys.address_for(1))

    async def test_indices_are_unique_and_skip_the_hot_wallet(self):
        accounts = [await self.open_account(f"u{i}") for i in range(5)]
        got = await asyncio.gather(*(self.addresses.get_deposit_address(a) for a in accounts))
        self.assertEqual(len(set(got)), 5)
        self.assertNotIn(self.keys.address_for(0), got)
        indices = sorted([(await self.ledger.get_account(a)).deposit_index for a in accounts])
        self.assertEqual(indices, [1, 2, 3, 4, 5])

    async def test_configured_hot_index_is_never_handed_out(self):
        addresses = DepositAddresses(self.ledger, self.keys, hot_wallet_index=1)
        a = await self.open_account("a")
        await addresses.get_deposit_address(a)
        self.assertEqual((await self.ledger.get_account(a)).deposit_index, 2)

    async def test_counter_survives_restart(self):
        async with self.session_factory() as session:
            async with session.begin():
                self.assertEqual(await next_derivation_index(session), 1)
        async with self.session_factory() as session:
            async with session.begin():
                self.assertEqual(await next_derivation_index(session), 2)
        async with self.session_factory() as session:
            async with session.begin():
                self.assertEqual(await next_derivation_index(session, "other"), 1)

    async def test_address_set_by_another_worker_wins(self):
        a = await self.open_account("a")
        theirs = self.keys.address_for(9)
        bump = next_derivation_index

        async def other_worker_first(session, name=DEPOSIT_COUNTER):
            await session.execute(
                update(Account).where(Account.id == a).values(deposit_address=theirs, deposit_index=9)
            )
            return await bump(session, name)

        with patch("app.services.deposit_service.next_derivation_index", new=other_worker_first):
            got = await self.addresses.get_deposit_address(a)
        self.assertEqual(got, theirs)
        acc = await self.ledger.get_account(a)
        self.assertEqual((acc.deposit_address, acc.deposit_index), (theirs, 9))
        self.assertEqual(await self.addresses.get_deposit_address(a), theirs)

    async def test_disabled_without_keys(self):
        a = await self.open_account("a")
        with self.assertRaises(RealMoneyDisabled):
            await DepositAddresses(self.ledger, None).get_deposit_address(a)


class DepositWatcherTest(LedgerTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.keys = KeyDerivation(TEST_MNEMONIC)
        self.gateway = FakeChainGateway()
        self.addresses = DepositAddresses(self.ledger, self.keys, hot_wallet_index=0)
        self.watcher = DepositWatcher(self.ledger, self.gateway, FixedRateSource(RATE))
        self.a = await self.open_account("a")
        self.addr = await self.addresses.get_deposit_address(self.a)

    async def real(self, account_id):
        return (await self.balances(account_id))[1]

    async def test_deposit_is_credited_once(self):
        out = self.gateway.receive(self.addr, 100_000)
        report = await self.watcher.scan_once()
        self.assertEqual(len(report.credited), 1)
        entry = report.credited[0]
        self.assertEqual((entry.kind, entry.status), (TxKind.DEPOSIT, TxStatus.CONFIRMED))
        self.assertEqual((entry.chain_amount, entry.amount, entry.chain_ref), (100_000, 5_000, out.outpoint))
        self.assertEqual(entry.idempotency_key, deposit_key(self.addr, 100_000, out.outpoint))
        self.assertEqual(await self.real(self.a), 5_000)

        again = await self.watcher.scan_once()
        self.assertEqual(again.credited, [])
        self.assertEqual(await self.real(self.a), 5_000)
        self.assertEqual(await self.ledger.credited_deposit_total(self.addr), 100_000)

    async def test_overlapping_scans_credit_once(self):
        self.gateway.receive(self.addr, 100_000)
        other = DepositWatcher(self.ledger, self.gateway, FixedRateSource(RATE))
        reports = await asyncio.gather(self.watcher.scan_once(), self.watcher.scan_once(), other.scan_once())
        self.assertEqual(sum(len(r.credited) for r in reports), 1)
        self.assertEqual(await self.real(self.a), 5_000)

    async def test_separate_inflows_stay_separate(self):
        self.gateway.receive(self.addr, 40_000)
        self.gateway.receive(self.addr, 40_000)
        report = await self.watcher.scan_once()
        self.assertEqual(len(report.credited), 2)
        self.assertEqual(len({e.chain_ref for e in report.credited}), 2)

        self.gateway.receive(self.addr, 20_000)
        report = await self.watcher.scan_once()
        self.assertEqual([e.chain_amount for e in report.credited], [20_000])
        self.assertEqual(await self.real(self.a), 5_000)

    async def test_unexplained_value_uses_the_watermark(self):
        self.gateway.extra_balance[self.addr] = 60_000
        report = await self.watcher.scan_once()
        [entry] = report.credited
        self.assertIsNone(entry.chain_ref)
        self.assertEqual(entry.idempotency_key, watermark_key(self.addr, 0, 60_000))
        self.assertEqual((await self.watcher.scan_once()).credited, [])

        # a later inflow of the same size is a new deposit
        self.gateway.extra_balance[self.addr] = 120_000
        [later] = (await self.watcher.scan_once()).credited
        self.assertEqual(later.idempotency_key, watermark_key(self.addr, 60_000, 60_000))
        self.assertEqual(await self.real(self.a), 6_000)

    async def test_watermarked_output_is_not_attributed_again(self):
        # the balance showed the first payment before the output listing did
        self.gateway.extra_balance[self.addr] = 50_000
        [first] = (await self.watcher.scan_once()).credited
        self.assertIsNone(first.chain_ref)

        del self.gateway.extra_balance[self.addr]
        self.gateway.receive(self.addr, 50_000, tx_ref=txid(1))
        new = self.gateway.receive(self.addr, 50_000, tx_ref=txid(2))
        [second] = (await self.watcher.scan_once()).credited
        self.assertEqual(second.chain_ref, new.outpoint)
        self.assertEqual((await self.watcher.scan_once()).credited, [])
        self.assertEqual(await self.ledger.credited_deposit_total(self.addr), 100_000)
        self.assertEqual(await self.real(self.a), 5_000)

    async def test_dust_deposit_is_recorded_at_zero(self):
        self.gateway.receive(self.addr, 1)
        [entry] = (await self.watcher.scan_once()).credited
        self.assertEqual((entry.chain_amount, entry.amount), (1, 0))
        self.assertEqual((await self.watcher.scan_once()).credited, [])
        self.assertEqual(await self.real(self.a), 0)

    async def test_one_failing_address_does_not_stop_the_scan(self):
        b = await self.open_account("b")
        addr_b = await self.addresses.get_deposit_address(b)
        self.gateway.receive(self.addr, 10_000)
        self.gateway.receive(addr_b, 10_000)
        self.gateway.failing.add(self.addr)

        report = await self.watcher.scan_once()
        self.assertEqual(report.addresses, 2)
        self.assertEqual(report.failed, [self.addr])
        self.assertEqual(await self.real(b), 500)
        self.assertEqual(await self.real(self.a), 0)

        self.gateway.failing.clear()
        await self.watcher.scan_once()
        self.assertEqual(await self.real(self.a), 500)

    async def test_missing_rate_retries_next_scan(self):
        rates = FlakyRates()
        watcher = DepositWatcher(self.ledger, self.gateway, rates)
        self.gateway.receive(self.addr, 100_000)
        report = await watcher.scan_once()
        self.assertEqual((report.credited, report.failed), ([], [self.addr]))
        rates.down = False
        self.assertEqual(len((await watcher.scan_once()).credited), 1)
        self.assertEqual(await self.real(self.a), 5_000)

    async def test_deposit_does_not_touch_play_money(self):
        self.gateway.receive(self.addr, 100_000)
        await self.watcher.scan_once()
        self.assertEqual((await self.ledger.get_balances(self.a)).play_money, 100)
        totals = await self.ledger.totals()
        self.assertEqual(totals.confirmed_deposits, 1)
        history = await self.ledger.list_transactions(self.a, limit=1)
        self.assertEqual(history[0].balance_type, BalanceType.REAL)


if __name__ == "__main__":
    unittest.main()
