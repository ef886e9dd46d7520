import enum

SATS_PER_BTC = 100_000_000

# derivation counter row used for deposit addresses
DEPOSIT_COUNTER = "deposit_index"

# redis keys
K_RATE_EUR_BTC = "custody:rate:eur_btc"


class BalanceType(str, enum.Enum):
    PLAY = "play"   # play money, whole coins
    REAL = "real"   # real money, EUR cents


class Direction(str, enum.Enum):
    IN = "in"
    OUT = "out"


class TxKind(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REFUND = "withdrawal-refund"
    STAKE_ESCROW = "stake-escrow"
    STAKE_PAYOUT = "stake-payout"
    STAKE_REFUND = "stake-refund"
    ADMIN_ADJUSTMENT = "admin-adjustment"
    DAILY_BONUS = "daily-bonus"
    SIGNUP_GRANT = "signup-grant"


class TxStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class EscrowState(str, enum.Enum):
    ESCROWED = "escrowed"
    SETTLED = "settled"


class MatchOutcome(str, enum.Enum):
    A_WINS = "a-wins"
    B_WINS = "b-wins"
    DRAW = "draw"
    FORFEIT_A = "forfeit-by-a"
    FORFEIT_B = "forfeit-by-b"


class WithdrawalStatus(str, enum.Enum):
    REQUESTED = "requested"
    BUILDING = "building"
    BROADCAST = "broadcast"   # sent, outcome not yet known
    CONFIRMED = "confirmed"
    FAILED_REFUNDED = "failed-refunded"


OPEN_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.REQUESTED,
    WithdrawalStatus.BUILDING,
    WithdrawalStatus.BROADCAST,
)
