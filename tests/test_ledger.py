import asyncio
import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from app.constants import BalanceType, Direction, EscrowState, MatchOutcome, TxKind, TxStatus
from app.core.errors import (
    AccountNotFound, CheckInNotAvailable, ConcurrencyConflict, InsufficientFunds, InvalidAmount, MatchStateError,
)
from app.services.ledger_service import platform_fee

from support import LedgerTestCase, db_error

REAL = BalanceType.REAL
PLAY = BalanceType.PLAY


class PlatformFeeTest(unittest.TestCase):

    def test_rounds_down(self):
        self.assertEqual(platform_fee(20, Decimal("5")), 1)
        self.assertEqual(platform_fee(30, Decimal("5")), 1)
        self.assertEqual(platform_fee(39, Decimal("5")), 1)
        self.assertEqual(platform_fee(40, Decimal("5")), 2)
        self.assertEqual(platform_fee(10, Decimal("2.5")), 0)
        self.assertEqual(platform_fee(100, Decimal("0")), 0)


class AccountTest(LedgerTestCase):

    async def test_open_account_grants_play_money_once(self):
        acc = await self.ledger.open_account("user-1")
        again = await self.ledger.open_account("user-1")
        self.assertEqual(acc.id, again.id)
        self.assertEqual(await self.balances(acc.id), (100, 0))
        history = await self.ledger.list_transactions(acc.id)
        self.assertEqual([t.kind for t in history], [TxKind.SIGNUP_GRANT])
        self.assertIsNone(acc.deposit_address)

    async def test_unknown_account(self):
        with self.assertRaises(AccountNotFound):
            await self.ledger.get_balances(999)
        with self.assertRaises(AccountNotFound):
            await self.ledger.credit(999, REAL, 10)


class BalanceOperationsTest(LedgerTestCase):

    async def test_credit_and_debit_record_transactions(self):
        a = await self.open_account("a")
        credit = await self.ledger.credit(a, REAL, 500, reason="test")
        self.assertEqual((credit.direction, credit.amount, credit.balance_after), (Direction.IN, 500, 500))
        debit = await self.ledger.debit(a, REAL, 200)
        self.assertEqual((debit.direction, debit.amount, debit.balance_after), (Direction.OUT, 200, 300))
        self.assertEqual(debit.status, TxStatus.CONFIRMED)
        self.assertEqual(await self.balances(a), (100, 300))

    async def test_debit_fails_closed(self):
        a = await self.open_account("a", real=50)
        with self.assertRaises(InsufficientFunds) as ctx:
            await self.ledger.debit(a, REAL, 51)
        self.assertEqual((ctx.exception.available, ctx.exception.needed), (50, 51))
        self.assertEqual(await self.balances(a), (100, 50))
        # play and real money are separate pots
        with self.assertRaises(InsufficientFunds):
            await self.ledger.debit(a, PLAY, 101)

    async def test_amounts_must_be_positive_integers(self):
        a = await self.open_account("a", real=50)
        for bad in (0, -5, 1.5, True, "10"):
            with self.assertRaises(InvalidAmount):
                await self.ledger.debit(a, REAL, bad)

    async def test_concurrent_debits_never_overdraw(self):
        a = await self.open_account("a", real=100)
        results = await asyncio.gather(
            *(self.ledger.debit(a, REAL, 15) for _ in range(10)), return_exceptions=True
        )
        ok = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(ok), 6)
        self.assertTrue(all(isinstance(e, InsufficientFunds) for e in failed))
        self.assertEqual(await self.balances(a), (100, 100 - 15 * len(ok)))

    async def test_adjust_balance(self):
        a = await self.open_account("a")
        entry = await self.ledger.adjust_balance(a, REAL, 250, "goodwill")
        self.assertEqual(entry.kind, TxKind.ADMIN_ADJUSTMENT)
        self.assertIn("goodwill", entry.remark)
        await self.ledger.adjust_balance(a, REAL, -50, "correction")
        self.assertEqual(await self.balances(a), (100, 200))
        with self.assertRaises(InsufficientFunds):
            await self.ledger.adjust_balance(a, REAL, -201, "too much")
        with self.assertRaises(InvalidAmount):
            await self.ledger.adjust_balance(a, REAL, 0, "nothing")

    async def test_daily_bonus_once_per_day(self):
        a = await self.open_account("a")
        now = datetime(2026, 1, 1, 12, 0, 0)
        entry = await self.ledger.claim_daily_bonus(a, now=now)
        self.assertEqual((entry.kind, entry.amount, entry.balance_after), (TxKind.DAILY_BONUS, 50, 150))

        with self.assertRaises(CheckInNotAvailable) as ctx:
            await self.ledger.claim_daily_bonus(a, now=now + timedelta(hours=23))
        self.assertEqual(ctx.exception.next_check_in, now + timedelta(hours=24))

        await self.ledger.claim_daily_bonus(a, now=now + timedelta(hours=24))
        self.assertEqual(await self.balances(a), (200, 0))

    async def test_transaction_history_pages_newest_first(self):
        a = await self.open_account("a")
        for i in range(1, 6):
            await self.ledger.credit(a, REAL, i)
        first = await self.ledger.list_transactions(a, limit=3)
        self.assertEqual([t.amount for t in first], [5, 4, 3])
        second = await self.ledger.list_transactions(a, limit=3, before_id=first[-1].id)
        self.assertEqual([t.amount for t in second], [2, 1, 100])
        self.assertEqual(second[-1].kind, TxKind.SIGNUP_GRANT)

    async def test_totals(self):
        a = await self.open_account("a", real=70)
        await self.open_account("b", real=30)
        await self.ledger.debit(a, PLAY, 40)
        totals = await self.ledger.totals()
        self.assertEqual((totals.accounts, totals.play_money, totals.real_money), (2, 160, 100))
        self.assertEqual((totals.confirmed_deposits, totals.open_withdrawals), (0, 0))


class EscrowTest(LedgerTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.a = await self.open_account("a", real=20)
        self.b = await self.open_account("b", real=20)

    async def test_win_pays_pot_minus_fee(self):
        escrow = await self.ledger.escrow_stake("m1", self.a, self.b, REAL, 10)
        self.assertEqual(escrow.state, EscrowState.ESCROWED)
        self.assertEqual(await self.balances(self.a), (100, 10))
        self.assertEqual(await self.balances(self.b), (100, 10))

        settled = await self.ledger.settle_match("m1", MatchOutcome.A_WINS)
        self.assertEqual((settled.state, settled.outcome, settled.fee), (EscrowState.SETTLED, MatchOutcome.A_WINS, 1))
        self.assertEqual(await self.balances(self.a), (100, 29))
        self.assertEqual(await self.balances(self.b), (100, 10))
        # pair change plus fee is zero
        self.assertEqual((29 - 20) + (10 - 20) + settled.fee, 0)

    async def test_draw_is_net_zero(self):
        await self.ledger.escrow_stake("m1", self.a, self.b, REAL, 10)
        settled = await self.ledger.settle_match("m1", MatchOutcome.DRAW)
        self.assertEqual(settled.fee, 0)
        self.assertEqual(await self.balances(self.a), (100, 20))
        self.assertEqual(await self.balances(self.b), (100, 20))
        kinds = [t.kind for t in await self.ledger.list_transactions(self.b, limit=1)]
        self.assertEqual(kinds, [TxKind.STAKE_REFUND])

    async def test_forfeit_is_a_win_for_the_other_side(self):
        await self.ledger.escrow_stake("m1", self.a, self.b, REAL, 10)
        await self.ledger.settle_match("m1", MatchOutcome.FORFEIT_A)
        self.assertEqual(await self.balances(self.a), (100, 10))
        self.assertEqual(await self.balances(self.b), (100, 29))

    async def test_play_money_stakes(self):
        await self.ledger.escrow_stake("m1", self.a, self.b, PLAY, 50)
        await self.ledger.settle_match("m1", MatchOutcome.B_WINS)
        self.assertEqual(await self.balances(self.a), (50, 20))
        self.assertEqual(await self.balances(self.b), (145, 20))

    async def test_escrow_is_all_or_nothing(self):
        poor = await self.open_account("poor", real=5)
        with self.assertRaises(InsufficientFunds):
            await self.ledger.escrow_stake("m1", self.a, poor, REAL, 10)
        self.assertEqual(await self.balances(self.a), (100, 20))
        self.assertEqual(await self.balances(poor), (100, 5))
        self.assertIsNone(await self.ledger.get_escrow("m1"))

    async def test_concurrent_escrows_on_the_same_pair(self):
        results = await asyncio.gather(
            self.ledger.escrow_stake("m1", self.a, self.b, REAL, 10),
            self.ledger.escrow_stake("m2", self.b, self.a, REAL, 10),
            self.ledger.escrow_stake("m3", self.a, self.b, REAL, 10),
            return_exceptions=True,
        )
        failed = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(failed), 1)
        self.assertIsInstance(failed[0], InsufficientFunds)
        self.assertEqual(await self.balances(self.a), (100, 0))
        self.assertEqual(await self.balances(self.b), (100, 0))

    async def test_settle_exactly_once(self):
        await self.ledger.escrow_stake("m1", self.a, self.b, REAL, 10)
        await self.ledger.settle_match("m1", MatchOutcome.A_WINS)
        with self.assertRaises(MatchStateError):
            await self.ledger.settle_match("m1", MatchOutcome.A_WINS)
        with self.assertRaises(MatchStateError):
            await self.ledger.settle_match("never-escrowed", MatchOutcome.DRAW)
        self.assertEqual(await self.balances(self.a), (100, 29))

    async def test_concurrent_settlement_pays_once(self):
        await self.ledger.escrow_stake("m1", self.a, self.b, REAL, 10)
        results = await asyncio.gather(
            self.ledger.settle_match("m1", MatchOutcome.A_WINS),
            self.ledger.settle_match("m1", MatchOutcome.B_WINS),
            return_exceptions=True,
        )
        self.assertEqual(sum(isinstance(r, MatchStateError) for r in results), 1)
        a_real = (await self.balances(self.a))[1]
        b_real = (await self.balances(self.b))[1]
        self.assertEqual(sorted((a_real, b_real)), [10, 29])

    async def test_match_id_is_escrowed_once(self):
        await self.ledger.escrow_stake("m1", self.a, self.b, REAL, 5)
        with self.assertRaises(MatchStateError):
            await self.ledger.escrow_stake("m1", self.a, self.b, REAL, 5)
        self.assertEqual(await self.balances(self.a), (100, 15))
        with self.assertRaises(MatchStateError):
            await self.ledger.escrow_stake("m2", self.a, self.a, REAL, 5)


class ConflictRetryTest(LedgerTestCase):

    async def test_conflict_is_retried(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise db_error()
            return "done"

        with self.assertLogs("app.services.ledger_service", "WARNING"):
            self.assertEqual(await self.ledger.retrying(flaky), "done")
        self.assertEqual(len(calls), 2)

    async def test_gives_up_after_the_configured_attempts(self):
        calls = []

        async def deadlocked():
            calls.append(1)
            raise db_error("Deadlock found when trying to get lock")

        with self.assertRaises(ConcurrencyConflict):
            await self.ledger.retrying(deadlocked)
        self.assertEqual(len(calls), 3)

    async def test_other_database_errors_are_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise db_error("no such table: account")

        with self.assertRaises(OperationalError):
            await self.ledger.retrying(broken)
        self.assertEqual(len(calls), 1)

    async def test_debit_survives_one_conflict(self):
        a = await self.open_account("a", real=100)
        real_debit = self.ledger._debit
        calls = []

        async def _debit(*args):
            calls.append(1)
            if len(calls) == 1:
                raise db_error()
            return await real_debit(*args)

        self.ledger._debit = _debit
        await self.ledger.debit(a, REAL, 30)
        self.assertEqual(len(calls), 2)
        self.assertEqual(await self.balances(a), (100, 70))


if __name__ == "__main__":
    unittest.main()
