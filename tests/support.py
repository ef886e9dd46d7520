"""Shared fixtures: a throwaway SQLite ledger, an in-memory chain and fixed keys."""
import os
import sqlite3
import tempfile
import unittest
from decimal import Decimal
from typing import Dict, List, Optional

from embit.transaction import Transaction
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.chain.gateway import ChainTx, SpendableOutput
from app.constants import BalanceType
from app.core.errors import ChainTransient
from app.services.bootstrap_service import ensure_counter, init_db
from app.services.ledger_service import Ledger

# BIP39/BIP84 reference mnemonic
TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
RATE = Decimal("50000")     # EUR per BTC


def txid(n: int) -> str:
    return f"{n:064x}"


def db_error(message: str = "database is locked") -> OperationalError:
    return OperationalError("UPDATE account SET ...", {}, sqlite3.OperationalError(message))


class FakeChainGateway:
    """In-memory provider. Balances are the sum of listed outputs plus `extra_balance`."""

    def __init__(self, fee_rate: int = 2):
        self.outputs: Dict[str, List[SpendableOutput]] = {}
        self.extra_balance: Dict[str, int] = {}
        self.failing: set = set()
        self.fee_rate = fee_rate
        self.broadcast_errors: List[Exception] = []
        self.broadcasts: List[bytes] = []
        self.known: set = set()
        self._seq = 0

    def receive(self, address: str, value: int, tx_ref: Optional[str] = None, vout: int = 0, script_hex: str = ""):
        self._seq += 1
        out = SpendableOutput(tx_ref or txid(self._seq), vout, value, script_hex)
        self.outputs.setdefault(address, []).append(out)
        return out

    def _check(self, address: str):
        if address in self.failing:
            raise ChainTransient(f"provider unavailable for {address}")

    async def get_confirmed_balance(self, address: str) -> int:
        self._check(address)
        return sum(o.value for o in self.outputs.get(address, [])) + self.extra_balance.get(address, 0)

    async def list_spendable_outputs(self, address: str) -> List[SpendableOutput]:
        self._check(address)
        return list(self.outputs.get(address, []))

    async def estimate_fee_rate(self) -> int:
        return self.fee_rate

    async def broadcast(self, raw_tx: bytes) -> str:
        self.broadcasts.append(raw_tx)
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        tx_ref = Transaction.parse(raw_tx).txid().hex()
        self.known.add(tx_ref)
        return tx_ref

    async def get_transaction(self, tx_ref: str) -> Optional[ChainTx]:
        if tx_ref in self.known:
            return ChainTx(tx_ref=tx_ref, confirmations=1, block_height=100)
        return None


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttl = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttl[key] = ex


class LedgerTestCase(unittest.IsolatedAsyncioTestCase):
    fee_percent = Decimal("5")

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        # a single connection: sqlite locks the whole file, not rows
        self.db = create_async_engine(
            f"sqlite+aiosqlite:///{os.path.join(self._tmp.name, 'wallet.db')}", pool_size=1, max_overflow=0,
        )
        await init_db(self.db)
        self.session_factory = async_sessionmaker(self.db, expire_on_commit=False)
        async with self.session_factory() as session:
            await ensure_counter(session)
        self.ledger = Ledger(
            self.session_factory,
            real_fee_percent=self.fee_percent,
            play_fee_percent=self.fee_percent,
            starting_play_balance=100,
            daily_play_bonus=50,
            conflict_retries=3,
        )

    async def asyncTearDown(self):
        await self.db.dispose()
        self._tmp.cleanup()

    async def open_account(self, user_id: str, real: int = 0) -> int:
        acc = await self.ledger.open_account(user_id)
        if real:
            await self.ledger.credit(acc.id, BalanceType.REAL, real)
        return acc.id

    async def balances(self, account_id: int):
        b = await self.ledger.get_balances(account_id)
        return b.play_money, b.real_money
