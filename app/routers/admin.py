from fastapi import APIRouter, Depends, HTTPException

from app.core.auth import get_engine, require_admin
from app.core.errors import WalletError
from app.schemas.wallet import AccountIn, AccountOut, AdjustIn, HotWalletOut, LedgerTxOut, ReconcileOut, ScanOut, StatsOut
from app.routers.wallet import http_error
from app.services.bootstrap_service import WalletEngine

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/accounts", response_model=AccountOut)
async def open_account(data: AccountIn, engine: WalletEngine = Depends(get_engine)):
    acc = await engine.ledger.open_account(data.user_id)
    return AccountOut.model_validate(acc)


@router.post("/adjust", response_model=LedgerTxOut)
async def adjust(data: AdjustIn, engine: WalletEngine = Depends(get_engine)):
    try:
        entry = await engine.ledger.adjust_balance(data.account_id, data.balance_type, data.delta, data.reason)
    except WalletError as e:
        raise http_error(e) from e
    return LedgerTxOut.model_validate(entry)


@router.get("/hot-wallet", response_model=HotWalletOut)
async def hot_wallet(engine: WalletEngine = Depends(get_engine)):
    if not engine.real_money:
        raise HTTPException(503, "real-money features are disabled")
    try:
        st = await engine.withdrawals.hot_wallet_status()
    except WalletError as e:
        raise http_error(e) from e
    return HotWalletOut(address=st.address, confirmed_sats=st.confirmed_sats,
                        eur_per_btc=st.eur_per_btc, value_cents=st.value_cents)


@router.get("/stats", response_model=StatsOut)
async def stats(engine: WalletEngine = Depends(get_engine)):
    t = await engine.ledger.totals()
    return StatsOut(
        accounts=t.accounts,
        play_money=t.play_money,
        real_money=t.real_money,
        confirmed_deposits=t.confirmed_deposits,
        open_withdrawals=t.open_withdrawals,
        active_matches=len(engine.matches),
    )


@router.post("/scan-deposits", response_model=ScanOut)
async def scan_deposits(engine: WalletEngine = Depends(get_engine)):
    if engine.watcher is None:
        raise HTTPException(503, "real-money features are disabled")
    report = await engine.watcher.scan_once()
    return ScanOut(addresses=report.addresses, credited=len(report.credited), failed=report.failed)


@router.post("/reconcile-withdrawals", response_model=ReconcileOut)
async def reconcile_withdrawals(engine: WalletEngine = Depends(get_engine)):
    if engine.withdrawals is None:
        raise HTTPException(503, "real-money features are disabled")
    report = await engine.withdrawals.reconcile_pending()
    return ReconcileOut(checked=report.checked, confirmed=report.confirmed,
                        refunded=report.refunded, pending=report.pending)
