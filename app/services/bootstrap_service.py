import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.chain.gateway import BlockcypherGateway, ChainGateway
from app.chain.keys import KeyDerivation
from app.chain.tx_builder import TransactionBuilder
from app.constants import DEPOSIT_COUNTER
from app.core.config import Settings
from app.core.errors import ConfigurationFatal
from app.db.session import Base
from app.models.wallet import DerivationCounter
from app.services.deposit_service import DepositAddresses, DepositWatcher
from app.services.ledger_service import Ledger
from app.services.match_service import MatchRegistry
from app.services.rate_service import CoinGeckoRateSource, RateSource
from app.services.withdrawal_service import WithdrawalOrchestrator

# register every table on Base.metadata
import app.models.match  # noqa: F401
import app.models.withdrawal  # noqa: F401

logger = logging.getLogger(__name__)


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def ensure_counter(session: AsyncSession, name: str = DEPOSIT_COUNTER) -> DerivationCounter:
    row = await session.scalar(select(DerivationCounter).where(DerivationCounter.name == name))
    if row is None:
        row = DerivationCounter(name=name, seq=0)
        session.add(row)
        await session.commit()
    return row


@dataclass
class WalletEngine:
    """Every long-lived collaborator of the custody core, created once at startup."""
    ledger: Ledger
    matches: MatchRegistry
    keys: Optional[KeyDerivation] = None
    gateway: Optional[ChainGateway] = None
    rates: Optional[RateSource] = None
    builder: Optional[TransactionBuilder] = None
    deposits: Optional[DepositAddresses] = None
    watcher: Optional[DepositWatcher] = None
    withdrawals: Optional[WithdrawalOrchestrator] = None

    @property
    def real_money(self) -> bool:
        return self.keys is not None

    async def aclose(self) -> None:
        for client in (self.gateway, self.rates):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()


def build_engine(
    cfg: Settings,
    session_factory: async_sessionmaker,
    redis=None,
    gateway: Optional[ChainGateway] = None,
    rates: Optional[RateSource] = None,
) -> WalletEngine:
    """
    Wire the custody core. With real money enabled a missing or broken seed
    raises ConfigurationFatal and the service must not start.
    """
    ledger = Ledger(
        session_factory,
        real_fee_percent=cfg.PLATFORM_FEE_PERCENT,
        play_fee_percent=cfg.PLAY_FEE_PERCENT,
        starting_play_balance=cfg.STARTING_PLAY_BALANCE,
        daily_play_bonus=cfg.DAILY_PLAY_BONUS,
        conflict_retries=cfg.CONFLICT_RETRIES,
    )
    engine = WalletEngine(ledger=ledger, matches=MatchRegistry(ledger, cfg.ALLOWED_STAKES))
    if not cfg.REAL_MONEY_ENABLED:
        logger.warning("real-money features disabled; play money only")
        engine.deposits = DepositAddresses(ledger, None, cfg.HOT_WALLET_INDEX)
        return engine

    if not cfg.WALLET_SEED:
        raise ConfigurationFatal("REAL_MONEY_ENABLED is set but WALLET_SEED is missing")
    keys = KeyDerivation(cfg.WALLET_SEED, cfg.WALLET_PASSPHRASE, cfg.BTC_NETWORK)
    if gateway is None:
        gateway = BlockcypherGateway(
            base_url=cfg.CHAIN_API_URL,
            fee_url=cfg.FEE_API_URL,
            token=cfg.CHAIN_API_TOKEN,
            timeout=cfg.CHAIN_TIMEOUT_SECONDS,
            fallback_fee_rate=cfg.FALLBACK_FEE_RATE,
        )
    if rates is None:
        if redis is None:
            raise ConfigurationFatal("a redis client is required for the EUR/BTC rate cache")
        rates = CoinGeckoRateSource(redis, url=cfg.RATE_API_URL, ttl=cfg.RATE_CACHE_SECONDS)
    builder = TransactionBuilder(keys, gateway, dust_threshold=cfg.DUST_THRESHOLD_SATS)

    engine.keys = keys
    engine.gateway = gateway
    engine.rates = rates
    engine.builder = builder
    engine.deposits = DepositAddresses(ledger, keys, cfg.HOT_WALLET_INDEX)
    engine.watcher = DepositWatcher(ledger, gateway, rates)
    engine.withdrawals = WithdrawalOrchestrator(
        ledger, keys, builder, gateway, rates,
        hot_wallet_index=cfg.HOT_WALLET_INDEX,
        min_withdrawal=cfg.MIN_WITHDRAWAL,
        grace_seconds=cfg.RECONCILE_GRACE_SECONDS,
        spent_hold_seconds=cfg.SPENT_OUTPUT_HOLD_SECONDS,
    )
    logger.info("custody engine ready: network=%s hot wallet index=%s", cfg.BTC_NETWORK, cfg.HOT_WALLET_INDEX)
    return engine
