from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.auth import get_current_account, get_engine
from app.core.errors import (
    AccountNotFound, ChainError, CheckInNotAvailable, ConcurrencyConflict, InsufficientFunds, InvalidAddress,
    InvalidAmount, MatchStateError, RealMoneyDisabled, WalletError, WithdrawalFailed,
)
from app.models.wallet import Account
from app.schemas.wallet import (
    BalancesOut, CheckInOut, DepositAddressOut, LedgerTxOut, LedgerTxPage, WithdrawIn, WithdrawalOut,
)
from app.services.bootstrap_service import WalletEngine

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


def http_error(e: WalletError) -> HTTPException:
    """Map an engine failure onto the response the client sees."""
    if isinstance(e, AccountNotFound):
        return HTTPException(404, str(e))
    if isinstance(e, (InsufficientFunds, InvalidAmount, InvalidAddress, CheckInNotAvailable)):
        return HTTPException(400, str(e))
    if isinstance(e, (MatchStateError, ConcurrencyConflict)):
        return HTTPException(409, str(e))
    if isinstance(e, WithdrawalFailed):
        # the balance is already restored; the cause decides the status
        if isinstance(e.cause, ConcurrencyConflict):
            return HTTPException(409, str(e))
        return HTTPException(400 if isinstance(e.cause, (InsufficientFunds, InvalidAmount)) else 502, str(e))
    if isinstance(e, RealMoneyDisabled):
        return HTTPException(503, str(e))
    if isinstance(e, ChainError):
        return HTTPException(502, str(e))
    return HTTPException(500, str(e))


def _real_money(engine: WalletEngine) -> WalletEngine:
    if not engine.real_money:
        raise HTTPException(503, "real-money features are disabled")
    return engine


@router.get("/balance", response_model=BalancesOut)
async def balance(account: Account = Depends(get_current_account), engine: WalletEngine = Depends(get_engine)):
    b = await engine.ledger.get_balances(account.id)
    return BalancesOut(account_id=account.id, play_money=b.play_money, real_money=b.real_money)


@router.get("/deposit-address", response_model=DepositAddressOut)
async def deposit_address(account: Account = Depends(get_current_account), engine: WalletEngine = Depends(get_engine)):
    try:
        address = await engine.deposits.get_deposit_address(account.id)
    except WalletError as e:
        raise http_error(e) from e
    return DepositAddressOut(address=address)


@router.post("/withdraw", response_model=WithdrawalOut)
async def withdraw(data: WithdrawIn, account: Account = Depends(get_current_account),
                   engine: WalletEngine = Depends(get_engine)):
    engine = _real_money(engine)
    try:
        req = await engine.withdrawals.request_withdrawal(account.id, data.amount, data.destination)
    except WalletError as e:
        raise http_error(e) from e
    return WithdrawalOut.model_validate(req)


@router.get("/withdrawals", response_model=list[WithdrawalOut])
async def withdrawals(limit: int = Query(20, ge=1, le=100), account: Account = Depends(get_current_account),
                      engine: WalletEngine = Depends(get_engine)):
    engine = _real_money(engine)
    rows = await engine.withdrawals.list_for_account(account.id, limit=limit)
    return [WithdrawalOut.model_validate(r) for r in rows]


@router.get("/transactions", response_model=LedgerTxPage)
async def transactions(
    limit: int = Query(20, ge=1, le=100),
    before_id: Optional[int] = Query(None, ge=1),
    account: Account = Depends(get_current_account),
    engine: WalletEngine = Depends(get_engine),
):
    rows = await engine.ledger.list_transactions(account.id, limit=limit, before_id=before_id)
    items = [LedgerTxOut.model_validate(r) for r in rows]
    next_before_id = items[-1].id if len(items) == limit else None
    return LedgerTxPage(items=items, next_before_id=next_before_id)


@router.post("/check-in", response_model=CheckInOut)
async def check_in(account: Account = Depends(get_current_account), engine: WalletEngine = Depends(get_engine)):
    try:
        entry = await engine.ledger.claim_daily_bonus(account.id)
    except WalletError as e:
        raise http_error(e) from e
    return CheckInOut(granted=entry.amount, play_money=entry.balance_after)

