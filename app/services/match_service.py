from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from app.constants import BalanceType, MatchOutcome
from app.core.config import settings
from app.core.errors import InvalidAmount, MatchStateError
from app.models.match import MatchEscrow
from app.services.ledger_service import Ledger


@dataclass
class ActiveMatch:
    match_id: str
    account_a: int
    account_b: int
    balance_type: BalanceType
    stake: int


class MatchRegistry:
    """Matches in play, keyed by match id; created once at startup."""

    def __init__(self, ledger: Ledger, allowed_stakes: Sequence[int] = settings.ALLOWED_STAKES):
        self.ledger = ledger
        self.allowed_stakes = tuple(allowed_stakes)
        self._active: Dict[str, ActiveMatch] = {}

    def __len__(self) -> int:
        return len(self._active)

    def get(self, match_id: str) -> Optional[ActiveMatch]:
        return self._active.get(match_id)

    def active(self) -> List[ActiveMatch]:
        return list(self._active.values())

    async def match_started(self, account_a: int, account_b: int, balance_type: BalanceType, stake: int,
                            match_id: Optional[str] = None) -> ActiveMatch:
        if self.allowed_stakes and stake not in self.allowed_stakes:
            raise InvalidAmount(f"stake {stake} is not one of {list(self.allowed_stakes)}")
        match_id = match_id or uuid.uuid4().hex
        if match_id in self._active:
            raise MatchStateError(f"match {match_id} is already active")

        escrow = await self.ledger.escrow_stake(match_id, account_a, account_b, balance_type, stake)
        match = ActiveMatch(match_id, escrow.account_a, escrow.account_b, escrow.balance_type, escrow.stake)
        self._active[match_id] = match
        return match

    async def match_ended(self, match_id: str, outcome: MatchOutcome) -> MatchEscrow:
        # settlement is keyed by the persisted escrow, so a restart that lost the registry still settles
        escrow = await self.ledger.settle_match(match_id, outcome)
        self._active.pop(match_id, None)
        return escrow
