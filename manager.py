import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, List, Optional

from config import LedgerConfig
from entities import (
    MAX_AMOUNT, Policy, Claim, ClaimStatus, Event,
    PolicyPurchased, ClaimSubmitted, ClaimProcessed, PayoutIssued,
    Paused, Unpaused, Withdrawn, Deposited, OwnershipTransferred,
)
from errors import (
    LedgerError, UnauthorizedError, StateGuardError, ValidationError,
    TransferError, ReentrancyError,
)

logger = logging.getLogger(__name__)


def _require_amount(value, name):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_AMOUNT:
        raise ValidationError(f"Invalid {name}")


def _coerce_status(status) -> ClaimStatus:
    try:
        status = ClaimStatus(status)
    except ValueError:
        raise ValidationError("Invalid claim status")
    if status is ClaimStatus.PENDING:
        raise ValidationError("Invalid claim status")
    return status


class PolicyLedger:
    """
    Insurance policy ledger: premiums in, claims submitted, approved claims paid out.

    Every operation runs under a per-ledger lock inside a store transaction,
    so it either applies all of its writes and events or none of them.
    ``purchase_policy``, ``submit_claim``, ``process_claim``, ``withdraw`` and
    ``deposit`` additionally refuse to be re-entered while one of them is running,
    which matters when ``transfer`` calls back into the ledger.

    ``transfer(recipient, amount)`` moves value out of the ledger; the default
    credits the store's account book. Any exception it raises aborts the operation.
    """

    def __init__(self, store, config: Optional[LedgerConfig] = None,
                 clock: Optional[Callable[[], int]] = None,
                 transfer: Optional[Callable[[str, int], None]] = None):
        self.store = store
        self.config = config or LedgerConfig()
        self.clock = clock or (lambda: int(time.time()))
        self._transfer = transfer or store.credit
        self._lock = threading.RLock()
        self._entered = False

    @contextmanager
    def _operation(self, name, guarded=False):
        with self._lock:
            if guarded and self._entered:
                logger.warning("%s rejected: reentrant call", name)
                raise ReentrancyError("ReentrancyGuard: reentrant call")
            previous = self._entered
            self._entered = self._entered or guarded
            events: List[Event] = []
            try:
                with self.store.transaction():
                    yield events
            except LedgerError as exc:
                logger.warning("%s rejected: %s", name, exc.reason)
                raise
            finally:
                self._entered = previous
            logger.info("%s applied (%d events)", name, len(events))

    def _emit(self, events, event):
        self.store.record_event(event)
        events.append(event)
        logger.debug("emitted %r", event)

    def _only_owner(self, caller):
        if caller != self.store.get_owner():
            raise UnauthorizedError("Ownable: caller is not the owner")

    def _when_not_paused(self):
        if self.store.is_paused():
            raise StateGuardError("Contract is paused")

    def _when_paused(self):
        if not self.store.is_paused():
            raise StateGuardError("Contract is not paused")

    def _add_to_balance(self, value):
        balance = self.store.get_balance() + value
        if balance > MAX_AMOUNT:
            raise ValidationError("Balance overflow")
        self.store.set_balance(balance)

    def _pay(self, recipient, amount):
        balance = self.store.get_balance()
        if amount > balance:
            raise TransferError("Transfer failed")
        self.store.set_balance(balance - amount)
        try:
            self._transfer(recipient, amount)
        except Exception as exc:
            logger.warning("transfer of %d to %s failed: %s", amount, recipient, exc)
            raise TransferError("Transfer failed") from exc

    # Policy lifecycle
    def purchase_policy(self, caller: str, coverage_amount: int, value: int) -> List[Event]:
        with self._operation('purchase_policy', guarded=True) as events:
            self._when_not_paused()
            _require_amount(coverage_amount, "coverage amount")
            _require_amount(value, "payment")
            if coverage_amount > self.config.max_coverage:
                raise ValidationError("Coverage amount too high")
            existing = self.store.get_policy(caller)
            # Expiry is not consulted: a lapsed policy keeps is_active set.
            if existing and existing.is_active:
                raise ValidationError("Active policy exists")
            premium = self.config.premium_for(coverage_amount)
            if premium < self.config.min_premium:
                raise ValidationError("Premium too low")
            if value < premium:
                raise ValidationError("Insufficient premium paid")

            now = self.clock()
            policy = Policy(
                coverage_amount=coverage_amount,
                premium=premium,
                start_time=now,
                end_time=now + self.config.policy_duration,
            )
            self.store.save_policy(caller, policy)
            # Overpayment stays with the ledger.
            self._add_to_balance(value)
            self._emit(events, PolicyPurchased(caller, coverage_amount, premium))
        return events

    def has_active_policy(self, holder: str) -> bool:
        with self._lock:
            policy = self.store.get_policy(holder)
            return bool(policy and policy.is_active and self.clock() <= policy.end_time)

    def get_policy(self, holder: str) -> Optional[Policy]:
        with self._lock:
            return self.store.get_policy(holder)

    # Claim lifecycle
    def submit_claim(self, caller: str, amount: int, description: str, evidence: str) -> List[Event]:
        with self._operation('submit_claim', guarded=True) as events:
            self._when_not_paused()
            _require_amount(amount, "claim amount")
            policy = self.store.get_policy(caller)
            if not policy or not policy.is_active:
                raise ValidationError("No active policy")
            now = self.clock()
            if now > policy.end_time:
                raise ValidationError("Policy expired")
            if amount > policy.coverage_amount:
                raise ValidationError("Claim exceeds coverage")
            if policy.claim_count >= self.config.max_claims_per_policy:
                raise ValidationError("Max claims reached")

            index = self.store.append_claim(caller, Claim(amount, description, evidence, now))
            policy.claim_count += 1
            self.store.save_policy(caller, policy)
            self._emit(events, ClaimSubmitted(caller, index, amount))
        return events

    def process_claim(self, caller: str, holder: str, claim_index: int, status) -> List[Event]:
        with self._operation('process_claim', guarded=True) as events:
            self._only_owner(caller)
            self._when_not_paused()
            claims = self.store.get_claims(holder)
            if isinstance(claim_index, bool) or not isinstance(claim_index, int) \
                    or not 0 <= claim_index < len(claims):
                raise ValidationError("Invalid claim index")
            claim = claims[claim_index]
            if claim.status is not ClaimStatus.PENDING:
                raise ValidationError("Claim already processed")
            claim.status = _coerce_status(status)

            self.store.save_claim(holder, claim_index, claim)
            self._emit(events, ClaimProcessed(holder, claim_index, claim.status))
            if claim.status is ClaimStatus.APPROVED:
                self._pay(holder, claim.amount)
                self._emit(events, PayoutIssued(holder, claim.amount))
        return events

    def get_claim_count(self, holder: str) -> int:
        with self._lock:
            return self.store.count_claims(holder)

    def get_claims(self, holder: str) -> List[Claim]:
        with self._lock:
            return self.store.get_claims(holder)

    def get_claim(self, holder: str, claim_index: int) -> Optional[Claim]:
        if isinstance(claim_index, bool) or not isinstance(claim_index, int):
            return None
        claims = self.get_claims(holder)
        if 0 <= claim_index < len(claims):
            return claims[claim_index]
        return None

    # Administration
    def pause(self, caller: str) -> List[Event]:
        with self._operation('pause') as events:
            self._only_owner(caller)
            self._when_not_paused()
            self.store.set_paused(True)
            self._emit(events, Paused(caller))
        return events

    def unpause(self, caller: str) -> List[Event]:
        with self._operation('unpause') as events:
            self._only_owner(caller)
            self._when_paused()
            self.store.set_paused(False)
            self._emit(events, Unpaused(caller))
        return events

    def withdraw(self, caller: str) -> List[Event]:
        with self._operation('withdraw', guarded=True) as events:
            self._only_owner(caller)
            amount = self.store.get_balance()
            self._pay(caller, amount)
            self._emit(events, Withdrawn(caller, amount))
        return events

    def deposit(self, caller: str, value: int) -> List[Event]:
        with self._operation('deposit', guarded=True) as events:
            self._when_not_paused()
            _require_amount(value, "deposit")
            self._add_to_balance(value)
            self._emit(events, Deposited(caller, value))
        return events

    def transfer_ownership(self, caller: str, new_owner: str) -> List[Event]:
        with self._operation('transfer_ownership') as events:
            self._only_owner(caller)
            if not new_owner or not isinstance(new_owner, str):
                raise ValidationError("Ownable: new owner is the zero address")
            self.store.set_owner(new_owner)
            self._emit(events, OwnershipTransferred(caller, new_owner))
        return events

    @property
    def owner(self) -> str:
        with self._lock:
            return self.store.get_owner()

    @property
    def paused(self) -> bool:
        with self._lock:
            return self.store.is_paused()

    @property
    def balance(self) -> int:
        with self._lock:
            return self.store.get_balance()

    def account_balance(self, identity: str) -> int:
        with self._lock:
            return self.store.account_balance(identity)

    def events(self) -> List[Event]:
        with self._lock:
            return self.store.events()
