# app/tasks/deposits.py
import logging

from app.services.bootstrap_service import WalletEngine

logger = logging.getLogger(__name__)


async def scan_deposits_job(engine: WalletEngine):
    """
    One pass over every assigned deposit address. Per-address failures are
    already isolated inside the watcher; this only guards the pass itself.
    """
    if engine.watcher is None:
        return
    try:
        await engine.watcher.scan_once()
    except Exception as e:
        logger.exception("[scan_deposits_job] error: %s", e)
