import os
from decimal import Decimal
from dotenv import load_dotenv
load_dotenv()


def _stakes(raw: str) -> tuple[int, ...]:
    return tuple(sorted(int(x) for x in raw.split(",") if x.strip()))


class Settings:
    APP_NAME = os.getenv("APP_NAME", "ttt-custody")
    APP_ENV = os.getenv("APP_ENV", "dev")
    APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
    APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT = int(os.getenv("APP_PORT", "8000"))
    TZ = os.getenv("TZ", "Europe/Rome")

    MYSQL_DSN = (
        f"mysql+aiomysql://{os.getenv('MYSQL_USER','root')}:{os.getenv('MYSQL_PASSWORD','123456')}"
        f"@{os.getenv('MYSQL_HOST','127.0.0.1')}:{os.getenv('MYSQL_PORT','3306')}/{os.getenv('MYSQL_DB','ttt')}?charset=utf8mb4"
    )
    DATABASE_URL = os.getenv("DATABASE_URL", MYSQL_DSN)
    REDIS_URL = os.getenv(
        "REDIS_URL",
        f"redis://{os.getenv('REDIS_HOST','127.0.0.1')}:{os.getenv('REDIS_PORT','6379')}/{os.getenv('REDIS_DB','0')}",
    )

    JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
    ADMIN_SECRET = os.getenv("ADMIN_SECRET", "change_me")

    # custody
    REAL_MONEY_ENABLED = os.getenv("REAL_MONEY_ENABLED", "1") == "1"
    WALLET_SEED = os.getenv("WALLET_SEED")  # BIP39 mnemonic, never logged
    WALLET_PASSPHRASE = os.getenv("WALLET_PASSPHRASE", "")
    BTC_NETWORK = os.getenv("BTC_NETWORK", "main")
    HOT_WALLET_INDEX = int(os.getenv("HOT_WALLET_INDEX", "0"))

    CHAIN_API_URL = os.getenv("CHAIN_API_URL", "https://api.blockcypher.com/v1/btc/main")
    CHAIN_API_TOKEN = os.getenv("CHAIN_API_TOKEN", "")
    FEE_API_URL = os.getenv("FEE_API_URL", "https://mempool.space/api/v1/fees/recommended")
    FALLBACK_FEE_RATE = int(os.getenv("FALLBACK_FEE_RATE", "10"))
    RATE_API_URL = os.getenv(
        "RATE_API_URL",
        "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=eur",
    )
    RATE_CACHE_SECONDS = int(os.getenv("RATE_CACHE_SECONDS", "60"))
    CHAIN_TIMEOUT_SECONDS = float(os.getenv("CHAIN_TIMEOUT_SECONDS", "10"))
    DUST_THRESHOLD_SATS = int(os.getenv("DUST_THRESHOLD_SATS", "546"))

    DEPOSIT_POLL_SECONDS = int(os.getenv("DEPOSIT_POLL_SECONDS", "60"))
    RECONCILE_POLL_SECONDS = int(os.getenv("RECONCILE_POLL_SECONDS", "120"))
    RECONCILE_GRACE_SECONDS = int(os.getenv("RECONCILE_GRACE_SECONDS", "300"))
    # outputs spent by a recent withdrawal stay reserved until the provider stops listing them
    SPENT_OUTPUT_HOLD_SECONDS = int(os.getenv("SPENT_OUTPUT_HOLD_SECONDS", "86400"))

    # game economy (play money in coins, real money in EUR cents)
    PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "5"))
    PLAY_FEE_PERCENT = Decimal(os.getenv("PLAY_FEE_PERCENT", os.getenv("PLATFORM_FEE_PERCENT", "5")))
    STARTING_PLAY_BALANCE = int(os.getenv("STARTING_PLAY_BALANCE", "100"))
    DAILY_PLAY_BONUS = int(os.getenv("DAILY_PLAY_BONUS", "50"))
    ALLOWED_STAKES = _stakes(os.getenv("ALLOWED_STAKES", "5,10,15,20,25,50"))
    MIN_WITHDRAWAL = int(os.getenv("MIN_WITHDRAWAL", "1000"))

    CONFLICT_RETRIES = int(os.getenv("CONFLICT_RETRIES", "3"))

settings = Settings()
