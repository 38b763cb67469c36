import threading

import pytest

from config import LedgerConfig
from entities import (
    UNIT, MAX_AMOUNT, ClaimStatus, PolicyPurchased, ClaimSubmitted, ClaimProcessed,
    to_base_units, format_units,
    PayoutIssued, Paused, Unpaused, Withdrawn, Deposited, OwnershipTransferred,
)
from errors import UnauthorizedError, StateGuardError, ValidationError, TransferError
from manager import PolicyLedger
from store import MemoryStore

DAY = 24 * 60 * 60
POLICY_DURATION = 365 * DAY
COVERAGE = 10 * UNIT
PREMIUM = COVERAGE * 1 // 100


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return PolicyLedger(MemoryStore(owner="owner"), clock=clock)


def funded_claim(ledger, amount=5 * UNIT):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    ledger.deposit("funder", 20 * UNIT)
    ledger.submit_claim("alice", amount, "Water damage", "ipfs://evidence")


# Deployment
def test_owner_and_initial_state(ledger):
    assert ledger.owner == "owner"
    assert ledger.paused is False
    assert ledger.balance == 0


# Policy purchase
def test_purchase_policy_with_correct_premium(ledger, clock):
    events = ledger.purchase_policy("alice", COVERAGE, PREMIUM)

    assert events == [PolicyPurchased("alice", COVERAGE, UNIT // 10)]
    policy = ledger.get_policy("alice")
    assert policy.premium == UNIT // 10
    assert policy.start_time == clock.now
    assert policy.end_time == clock.now + POLICY_DURATION
    assert policy.claim_count == 0
    assert ledger.balance == PREMIUM
    assert ledger.has_active_policy("alice")


def test_insufficient_premium(ledger):
    with pytest.raises(ValidationError, match="Insufficient premium paid"):
        ledger.purchase_policy("alice", COVERAGE, 9 * 10 ** 14)
    assert ledger.get_policy("alice") is None
    assert ledger.balance == 0


def test_coverage_too_high_regardless_of_value(ledger):
    with pytest.raises(ValidationError, match="Coverage amount too high"):
        ledger.purchase_policy("alice", 101 * UNIT, 1000 * UNIT)


def test_premium_below_minimum(ledger):
    with pytest.raises(ValidationError, match="Premium too low"):
        ledger.purchase_policy("alice", UNIT // 2, UNIT)


def test_premium_is_floored(clock):
    ledger = PolicyLedger(MemoryStore(owner="owner"), LedgerConfig(min_premium=0), clock=clock)
    events = ledger.purchase_policy("alice", 199, 1)
    assert events[0].premium == 1


def test_active_policy_blocks_purchase_even_after_expiry(ledger, clock):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    with pytest.raises(ValidationError, match="Active policy exists"):
        ledger.purchase_policy("alice", COVERAGE, PREMIUM)

    clock.advance(2 * POLICY_DURATION)
    assert not ledger.has_active_policy("alice")
    with pytest.raises(ValidationError, match="Active policy exists"):
        ledger.purchase_policy("alice", COVERAGE, PREMIUM)


def test_overpayment_is_retained(ledger):
    ledger.purchase_policy("alice", COVERAGE, UNIT)
    assert ledger.get_policy("alice").premium == PREMIUM
    assert ledger.balance == UNIT


def test_pause_is_checked_before_coverage(ledger):
    ledger.pause("owner")
    with pytest.raises(StateGuardError, match="Contract is paused"):
        ledger.purchase_policy("alice", 101 * UNIT, PREMIUM)


def test_negative_amounts_rejected(ledger):
    with pytest.raises(ValidationError):
        ledger.purchase_policy("alice", -COVERAGE, PREMIUM)


# Claims
def test_submit_valid_claim(ledger, clock):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    events = ledger.submit_claim("alice", 5 * UNIT, "Test claim", "ipfs://evidence")

    assert events == [ClaimSubmitted("alice", 0, 5 * UNIT)]
    claim = ledger.get_claim("alice", 0)
    assert claim.status is ClaimStatus.PENDING
    assert claim.timestamp == clock.now
    assert claim.evidence == "ipfs://evidence"
    assert ledger.get_claim_count("alice") == 1
    assert ledger.get_policy("alice").claim_count == 1


def test_claim_exceeds_coverage(ledger):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    with pytest.raises(ValidationError, match="Claim exceeds coverage"):
        ledger.submit_claim("alice", COVERAGE + 1, "Test claim", "ipfs://evidence")


def test_claim_without_policy(ledger):
    with pytest.raises(ValidationError, match="No active policy"):
        ledger.submit_claim("bob", UNIT, "Test claim", "ipfs://evidence")


def test_claim_after_expiry(ledger, clock):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    clock.advance(POLICY_DURATION + 1)
    with pytest.raises(ValidationError, match="Policy expired"):
        ledger.submit_claim("alice", 5 * UNIT, "Test claim", "ipfs://evidence")
    assert ledger.get_policy("alice").is_active


def test_claim_on_last_covered_second(ledger, clock):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    clock.advance(POLICY_DURATION)
    ledger.submit_claim("alice", UNIT, "Test claim", "ipfs://evidence")
    assert ledger.has_active_policy("alice")


def test_fourth_claim_hits_limit(ledger):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    for i in range(3):
        events = ledger.submit_claim("alice", UNIT, f"Claim {i}", "ipfs://evidence")
        assert events[0].claim_index == i
    with pytest.raises(ValidationError, match="Max claims reached"):
        ledger.submit_claim("alice", UNIT, "Claim 3", "ipfs://evidence")
    assert ledger.get_claim_count("alice") == 3


def test_unknown_holder_queries(ledger):
    assert ledger.has_active_policy("nobody") is False
    assert ledger.get_claim_count("nobody") == 0
    assert ledger.get_claim("nobody", 0) is None


# Claim processing
def test_approve_claim_pays_out_once(ledger):
    funded_claim(ledger)
    balance = ledger.balance

    events = ledger.process_claim("owner", "alice", 0, ClaimStatus.APPROVED)

    assert events == [
        ClaimProcessed("alice", 0, ClaimStatus.APPROVED),
        PayoutIssued("alice", 5 * UNIT),
    ]
    assert ledger.get_claim("alice", 0).status is ClaimStatus.APPROVED
    assert ledger.balance == balance - 5 * UNIT
    assert ledger.account_balance("alice") == 5 * UNIT

    with pytest.raises(ValidationError, match="Claim already processed"):
        ledger.process_claim("owner", "alice", 0, ClaimStatus.APPROVED)
    assert ledger.account_balance("alice") == 5 * UNIT


def test_reject_claim_has_no_payout(ledger):
    funded_claim(ledger)
    balance = ledger.balance

    events = ledger.process_claim("owner", "alice", 0, "Rejected")

    assert events == [ClaimProcessed("alice", 0, ClaimStatus.REJECTED)]
    assert ledger.balance == balance
    assert ledger.account_balance("alice") == 0


def test_process_claim_requires_owner(ledger):
    funded_claim(ledger)
    with pytest.raises(UnauthorizedError, match="caller is not the owner"):
        ledger.process_claim("alice", "alice", 0, ClaimStatus.APPROVED)


def test_process_claim_invalid_index(ledger):
    funded_claim(ledger)
    with pytest.raises(ValidationError, match="Invalid claim index"):
        ledger.process_claim("owner", "alice", 1, ClaimStatus.APPROVED)
    with pytest.raises(ValidationError, match="Invalid claim index"):
        ledger.process_claim("owner", "alice", -1, ClaimStatus.APPROVED)


def test_process_claim_back_to_pending_rejected(ledger):
    funded_claim(ledger)
    with pytest.raises(ValidationError, match="Invalid claim status"):
        ledger.process_claim("owner", "alice", 0, ClaimStatus.PENDING)
    assert ledger.get_claim("alice", 0).status is ClaimStatus.PENDING


def test_payout_beyond_balance_aborts(ledger):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    ledger.submit_claim("alice", 5 * UNIT, "Test claim", "ipfs://evidence")
    events_before = ledger.events()

    with pytest.raises(TransferError, match="Transfer failed"):
        ledger.process_claim("owner", "alice", 0, ClaimStatus.APPROVED)

    assert ledger.get_claim("alice", 0).status is ClaimStatus.PENDING
    assert ledger.balance == PREMIUM
    assert ledger.events() == events_before


def test_recipient_rejecting_funds_aborts(clock):
    def reject(recipient, amount):
        raise RuntimeError("recipient refuses value")

    ledger = PolicyLedger(MemoryStore(owner="owner"), clock=clock, transfer=reject)
    funded_claim(ledger)
    balance = ledger.balance

    with pytest.raises(TransferError):
        ledger.process_claim("owner", "alice", 0, ClaimStatus.APPROVED)

    assert ledger.get_claim("alice", 0).status is ClaimStatus.PENDING
    assert ledger.balance == balance


def test_reentrant_withdraw_during_payout_fails(clock):
    calls = []

    def reenter(recipient, amount):
        calls.append(recipient)
        ledger.withdraw("owner")

    ledger = PolicyLedger(MemoryStore(owner="owner"), clock=clock, transfer=reenter)
    funded_claim(ledger)
    balance = ledger.balance

    with pytest.raises(TransferError) as excinfo:
        ledger.process_claim("owner", "alice", 0, ClaimStatus.APPROVED)

    assert "reentrant" in str(excinfo.value.__cause__)
    assert calls == ["alice"]
    assert ledger.get_claim("alice", 0).status is ClaimStatus.PENDING
    assert ledger.balance == balance
    # guard released after the failure
    ledger.process_claim("owner", "alice", 0, ClaimStatus.REJECTED)


# Pausing
def test_pause_and_unpause(ledger):
    assert ledger.pause("owner") == [Paused("owner")]
    assert ledger.paused is True
    assert ledger.unpause("owner") == [Unpaused("owner")]
    assert ledger.paused is False


def test_pause_guards(ledger):
    with pytest.raises(StateGuardError, match="Contract is not paused"):
        ledger.unpause("owner")
    ledger.pause("owner")
    with pytest.raises(StateGuardError, match="Contract is paused"):
        ledger.pause("owner")
    with pytest.raises(UnauthorizedError):
        ledger.unpause("alice")


def test_pause_blocks_operations_but_not_withdraw(ledger):
    funded_claim(ledger)
    ledger.pause("owner")

    with pytest.raises(StateGuardError, match="Contract is paused"):
        ledger.purchase_policy("bob", COVERAGE, PREMIUM)
    with pytest.raises(StateGuardError, match="Contract is paused"):
        ledger.submit_claim("alice", UNIT, "Test claim", "ipfs://evidence")
    with pytest.raises(StateGuardError, match="Contract is paused"):
        ledger.process_claim("owner", "alice", 0, ClaimStatus.APPROVED)

    ledger.withdraw("owner")
    assert ledger.balance == 0

    ledger.unpause("owner")
    ledger.purchase_policy("bob", COVERAGE, PREMIUM)
    ledger.submit_claim("alice", UNIT, "Test claim", "ipfs://evidence")
    assert ledger.get_claim_count("alice") == 2


# Withdrawal
def test_withdraw_entire_balance(ledger):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)

    events = ledger.withdraw("owner")

    assert events == [Withdrawn("owner", PREMIUM)]
    assert ledger.balance == 0
    assert ledger.account_balance("owner") == PREMIUM


def test_withdraw_requires_owner(ledger):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    with pytest.raises(UnauthorizedError):
        ledger.withdraw("alice")
    assert ledger.balance == PREMIUM


def test_deposit(ledger):
    assert ledger.deposit("funder", UNIT) == [Deposited("funder", UNIT)]
    assert ledger.balance == UNIT


# Ownership
def test_transfer_ownership(ledger):
    events = ledger.transfer_ownership("owner", "carol")
    assert events == [OwnershipTransferred("owner", "carol")]
    assert ledger.owner == "carol"
    with pytest.raises(UnauthorizedError):
        ledger.pause("owner")
    ledger.pause("carol")


def test_transfer_ownership_to_empty_identity(ledger):
    with pytest.raises(ValidationError, match="zero address"):
        ledger.transfer_ownership("owner", "")
    assert ledger.owner == "owner"


# Event log and concurrency
def test_event_log_only_holds_successful_operations(ledger):
    ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    with pytest.raises(ValidationError):
        ledger.purchase_policy("alice", COVERAGE, PREMIUM)
    ledger.pause("owner")

    assert ledger.events() == [
        PolicyPurchased("alice", COVERAGE, PREMIUM),
        Paused("owner"),
    ]


def test_concurrent_purchases_are_serialized(ledger):
    holders = [f"holder-{i}" for i in range(20)]
    errors = []

    def buy(holder):
        try:
            ledger.purchase_policy(holder, COVERAGE, PREMIUM)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=buy, args=(h,)) for h in holders]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert ledger.balance == PREMIUM * len(holders)
    assert all(ledger.has_active_policy(h) for h in holders)


# Unit conversion
def test_to_base_units_is_exact():
    assert to_base_units("12345678901.123456789012345678") == 12345678901123456789012345678
    assert to_base_units("0.1") == UNIT // 10
    assert to_base_units("1.50") == 3 * UNIT // 2
    assert to_base_units("0E-50") == 0
    assert to_base_units(10) == 10 * UNIT


def test_to_base_units_rejects_bad_amounts():
    for value in ("1e999999", "1e60", str(MAX_AMOUNT), "0.0000000000000000001", "NaN", "Infinity", "ten"):
        with pytest.raises(ValueError):
            to_base_units(value)


def test_format_units_is_exact():
    assert format_units(12345678901123456789012345678) == "12345678901.123456789012345678"
    assert format_units(UNIT // 10) == "0.1"
    assert format_units(151 * UNIT // 10) == "15.1"
    assert format_units(0) == "0"
    assert format_units(MAX_AMOUNT).startswith(str(MAX_AMOUNT // UNIT) + ".")


def test_deposit_beyond_balance_ceiling(ledger):
    ledger.deposit("funder", MAX_AMOUNT)
    with pytest.raises(ValidationError, match="Balance overflow"):
        ledger.deposit("funder", 1)
    with pytest.raises(ValidationError):
        ledger.deposit("funder", MAX_AMOUNT + 1)
    assert ledger.balance == MAX_AMOUNT


def test_get_claim_with_non_integer_index(ledger):
    funded_claim(ledger)
    assert ledger.get_claim("alice", "0") is None
    assert ledger.get_claim("alice", None) is None
    assert ledger.get_claim("alice", True) is None
