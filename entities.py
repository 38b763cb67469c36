from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from enum import Enum

UNIT_DECIMALS = 18
UNIT = 10 ** UNIT_DECIMALS
# 256-bit ceiling for any amount or balance
MAX_AMOUNT = 2 ** 256 - 1
MAX_AMOUNT_DIGITS = len(str(MAX_AMOUNT))


class ClaimStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


@dataclass
class Policy:
    coverage_amount: int
    premium: int
    start_time: int
    end_time: int
    is_active: bool = True
    claim_count: int = 0


@dataclass
class Claim:
    amount: int
    description: str
    evidence: str
    timestamp: int
    status: ClaimStatus = ClaimStatus.PENDING


@dataclass(frozen=True)
class Event:
    """Notification emitted by a successful ledger operation."""

    def to_dict(self):
        data = {"event": type(self).__name__}
        for key, value in asdict(self).items():
            data[key] = value.value if isinstance(value, ClaimStatus) else value
        return data


@dataclass(frozen=True)
class PolicyPurchased(Event):
    policyholder: str
    coverage_amount: int
    premium: int


@dataclass(frozen=True)
class ClaimSubmitted(Event):
    policyholder: str
    claim_index: int
    amount: int


@dataclass(frozen=True)
class ClaimProcessed(Event):
    policyholder: str
    claim_index: int
    status: ClaimStatus


@dataclass(frozen=True)
class PayoutIssued(Event):
    policyholder: str
    amount: int


@dataclass(frozen=True)
class Paused(Event):
    account: str


@dataclass(frozen=True)
class Unpaused(Event):
    account: str


@dataclass(frozen=True)
class Withdrawn(Event):
    owner: str
    amount: int


@dataclass(frozen=True)
class Deposited(Event):
    sender: str
    amount: int


@dataclass(frozen=True)
class OwnershipTransferred(Event):
    previous_owner: str
    new_owner: str


EVENT_TYPES = {cls.__name__: cls for cls in (
    PolicyPurchased, ClaimSubmitted, ClaimProcessed, PayoutIssued,
    Paused, Unpaused, Withdrawn, Deposited, OwnershipTransferred,
)}


def event_from_dict(data):
    data = dict(data)
    cls = EVENT_TYPES[data.pop("event")]
    if "status" in data:
        data["status"] = ClaimStatus(data["status"])
    return cls(**data)


def to_base_units(value) -> int:
    """Parse a decimal unit amount ("0.1", 10, Decimal) into integer base units, exactly."""
    try:
        parsed = Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        raise ValueError(f"Invalid amount: {value!r}")
    if not parsed.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")

    sign, digits, exponent = parsed.as_tuple()
    exponent += UNIT_DECIMALS
    coefficient = int("".join(map(str, digits)))
    if coefficient == 0:
        return 0
    while exponent < 0 and coefficient % 10 == 0:
        coefficient //= 10
        exponent += 1
    if exponent < 0:
        raise ValueError(f"Amount has more precision than the base unit: {value!r}")
    if exponent > MAX_AMOUNT_DIGITS:
        raise ValueError(f"Amount too large: {value!r}")
    amount = coefficient * 10 ** exponent
    if amount > MAX_AMOUNT:
        raise ValueError(f"Amount too large: {value!r}")
    return -amount if sign else amount


def format_units(amount: int) -> str:
    sign = "-" if amount < 0 else ""
    whole, fraction = divmod(abs(amount), UNIT)
    if not fraction:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{fraction:0{UNIT_DECIMALS}d}".rstrip("0")
