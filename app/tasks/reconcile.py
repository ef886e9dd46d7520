# app/tasks/reconcile.py
import logging

from app.services.bootstrap_service import WalletEngine

logger = logging.getLogger(__name__)


async def reconcile_withdrawals_job(engine: WalletEngine):
    if engine.withdrawals is None:
        return
    try:
        report = await engine.withdrawals.reconcile_pending()
    except Exception as e:
        logger.exception("[reconcile_withdrawals_job] error: %s", e)
        return
    if report.confirmed or report.refunded:
        logger.warning("reconciled withdrawals: confirmed=%s refunded=%s still pending=%s",
                       report.confirmed, report.refunded, report.pending)
