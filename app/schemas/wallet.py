from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.constants import BalanceType, Direction, TxKind, TxStatus, WithdrawalStatus


class BalancesOut(BaseModel):
    account_id: int
    play_money: int            # coins
    real_money: int            # EUR cents

class DepositAddressOut(BaseModel):
    address: str

class WithdrawIn(BaseModel):
    amount: int = Field(gt=0)  # EUR cents
    destination: str = Field(min_length=14, max_length=128)

class WithdrawalOut(BaseModel):
    id: int
    amount: int
    destination: str
    status: WithdrawalStatus
    amount_sats: Optional[int] = None
    fee_sats: Optional[int] = None
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class LedgerTxOut(BaseModel):
    id: int
    kind: TxKind
    balance_type: BalanceType
    direction: Direction
    amount: int
    balance_after: int
    status: TxStatus
    chain_amount: Optional[int] = None
    chain_ref: Optional[str] = None
    match_id: Optional[str] = None
    withdrawal_id: Optional[int] = None
    remark: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class LedgerTxPage(BaseModel):
    items: List[LedgerTxOut]
    next_before_id: Optional[int] = None   # pass back as before_id for the next page

class CheckInOut(BaseModel):
    granted: int
    play_money: int

# ---- admin ----
class AdjustIn(BaseModel):
    account_id: int
    balance_type: BalanceType
    delta: int
    reason: str = Field(min_length=1, max_length=200)

class HotWalletOut(BaseModel):
    address: str
    confirmed_sats: int
    eur_per_btc: Decimal
    value_cents: int

class StatsOut(BaseModel):
    accounts: int
    play_money: int
    real_money: int
    confirmed_deposits: int
    open_withdrawals: int
    active_matches: int

class ScanOut(BaseModel):
    addresses: int
    credited: int
    failed: List[str]

class ReconcileOut(BaseModel):
    checked: int
    confirmed: List[int]
    refunded: List[int]
    pending: List[int]

class AccountIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)

class AccountOut(BaseModel):
    id: int
    user_id: str
    play_balance: int
    real_balance: int
    deposit_address: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
