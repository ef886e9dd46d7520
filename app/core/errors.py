from __future__ import annotations

from datetime import datetime
from typing import Optional


class WalletError(Exception):
    """Base class for every failure raised by the custody engine."""


class ConfigurationFatal(WalletError):
    pass


class RealMoneyDisabled(WalletError):
    pass


class AccountNotFound(WalletError):
    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"account {account_id} not found")


class InsufficientFunds(WalletError):
    def __init__(self, message: str = "insufficient funds", available: Optional[int] = None, needed: Optional[int] = None):
        self.available = available
        self.needed = needed
        super().__init__(message)


class InvalidAmount(WalletError):
    pass


class InvalidAddress(WalletError):
    pass


class MatchStateError(WalletError):
    pass


class CheckInNotAvailable(WalletError):
    def __init__(self, next_check_in: datetime):
        self.next_check_in = next_check_in
        super().__init__(f"next check-in available at {next_check_in:%Y-%m-%d %H:%M:%S}")


class ConcurrencyConflict(WalletError):
    pass


# ------------------------------
# chain provider
# ------------------------------
class ChainError(WalletError):
    pass


class ChainTransient(ChainError):
    """Network or provider flakiness; safe to retry on the next cycle."""


class BroadcastOutcomeUnknown(ChainTransient):
    """The request may have reached the provider; the result was lost."""


class RateUnavailable(ChainTransient):
    pass


class ChainRejected(ChainError):
    """The provider refused the request for good (malformed tx, policy)."""


class WithdrawalFailed(WalletError):
    """
    Raised once the withdrawal has been refunded; `request` is already in its
    terminal failed-refunded state and `cause` is the error that stopped it.
    """

    def __init__(self, request, cause: Exception):
        self.request = request
        self.cause = cause
        super().__init__(f"withdrawal {getattr(request, 'id', '?')} failed and was refunded: {cause}")
