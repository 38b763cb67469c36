from contextlib import contextmanager
from typing import List, Optional

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.types import TypeDecorator, String

from entities import Policy, Claim, ClaimStatus, Event, event_from_dict
from errors import DatabaseError

db = SQLAlchemy()


class Amount(TypeDecorator):
    """Integer base-unit amount stored as a decimal string; values exceed 64 bits."""
    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(int(value))

    def process_result_value(self, value, dialect):
        return None if value is None else int(value)


class LedgerState(db.Model):
    __tablename__ = 'ledger_state'
    id = db.Column(db.Integer, primary_key=True)
    owner = db.Column(db.String(64), nullable=False)
    paused = db.Column(db.Boolean, nullable=False, default=False)
    balance = db.Column(Amount, nullable=False, default=0)


class PolicyRecord(db.Model):
    __tablename__ = 'policy'
    policyholder = db.Column(db.String(64), primary_key=True)
    coverage_amount = db.Column(Amount, nullable=False)
    premium = db.Column(Amount, nullable=False)
    start_time = db.Column(db.BigInteger, nullable=False)
    end_time = db.Column(db.BigInteger, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    claim_count = db.Column(db.Integer, nullable=False, default=0)

    def to_entity(self) -> Policy:
        return Policy(
            coverage_amount=self.coverage_amount,
            premium=self.premium,
            start_time=self.start_time,
            end_time=self.end_time,
            is_active=self.is_active,
            claim_count=self.claim_count,
        )


class ClaimRecord(db.Model):
    __tablename__ = 'claim'
    policyholder = db.Column(db.String(64), primary_key=True)
    claim_index = db.Column(db.Integer, primary_key=True, autoincrement=False)
    amount = db.Column(Amount, nullable=False)
    description = db.Column(db.Text, nullable=False)
    evidence = db.Column(db.Text, nullable=False)
    timestamp = db.Column(db.BigInteger, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ClaimStatus.PENDING.value)

    def to_entity(self) -> Claim:
        return Claim(
            amount=self.amount,
            description=self.description,
            evidence=self.evidence,
            timestamp=self.timestamp,
            status=ClaimStatus(self.status),
        )


class Account(db.Model):
    __tablename__ = 'account'
    identity = db.Column(db.String(64), primary_key=True)
    balance = db.Column(Amount, nullable=False, default=0)


class EventRecord(db.Model):
    __tablename__ = 'event'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(40), nullable=False)
    payload = db.Column(db.JSON, nullable=False)


def safe_commit():
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        raise DatabaseError(f"Database error: {str(e)}")


class SqlStore:
    """Ledger state in SQL tables. Needs an active Flask app context."""

    def __init__(self, owner: str, ledger_id: int = 1):
        self.default_owner = owner
        self.ledger_id = ledger_id
        self._depth = 0

    def initialize(self):
        if db.session.get(LedgerState, self.ledger_id) is None:
            db.session.add(LedgerState(id=self.ledger_id, owner=self.default_owner,
                                       paused=False, balance=0))
            safe_commit()

    @contextmanager
    def transaction(self):
        outermost = self._depth == 0
        savepoint = None if outermost else db.session.begin_nested()
        self._depth += 1
        try:
            yield
        except BaseException:
            if outermost:
                db.session.rollback()
            else:
                savepoint.rollback()
            raise
        finally:
            self._depth -= 1
        if outermost:
            safe_commit()
        else:
            savepoint.commit()

    def _state(self) -> LedgerState:
        state = db.session.get(LedgerState, self.ledger_id)
        if state is None:
            raise DatabaseError("Ledger state not initialized")
        return state

    # Ledger state
    def get_owner(self) -> str:
        return self._state().owner

    def set_owner(self, owner: str):
        self._state().owner = owner

    def is_paused(self) -> bool:
        return self._state().paused

    def set_paused(self, paused: bool):
        self._state().paused = paused

    def get_balance(self) -> int:
        return self._state().balance

    def set_balance(self, balance: int):
        self._state().balance = balance

    # Policies
    def get_policy(self, holder: str) -> Optional[Policy]:
        record = db.session.get(PolicyRecord, holder)
        return record.to_entity() if record else None

    def save_policy(self, holder: str, policy: Policy):
        record = db.session.get(PolicyRecord, holder)
        if record is None:
            record = PolicyRecord(policyholder=holder)
            db.session.add(record)
        record.coverage_amount = policy.coverage_amount
        record.premium = policy.premium
        record.start_time = policy.start_time
        record.end_time = policy.end_time
        record.is_active = policy.is_active
        record.claim_count = policy.claim_count

    # Claims
    def get_claims(self, holder: str) -> List[Claim]:
        records = ClaimRecord.query.filter_by(policyholder=holder) \
            .order_by(ClaimRecord.claim_index).all()
        return [r.to_entity() for r in records]

    def count_claims(self, holder: str) -> int:
        return ClaimRecord.query.filter_by(policyholder=holder).count()

    def append_claim(self, holder: str, claim: Claim) -> int:
        index = self.count_claims(holder)
        db.session.add(ClaimRecord(
            policyholder=holder,
            claim_index=index,
            amount=claim.amount,
            description=claim.description,
            evidence=claim.evidence,
            timestamp=claim.timestamp,
            status=claim.status.value,
        ))
        db.session.flush()
        return index

    def save_claim(self, holder: str, index: int, claim: Claim):
        record = db.session.get(ClaimRecord, (holder, index))
        record.status = claim.status.value

    # Account book for transferred value
    def account_balance(self, identity: str) -> int:
        account = db.session.get(Account, identity)
        return account.balance if account else 0

    def credit(self, identity: str, amount: int):
        account = db.session.get(Account, identity)
        if account is None:
            account = Account(identity=identity, balance=0)
            db.session.add(account)
        account.balance = account.balance + amount

    # Event log
    def record_event(self, event: Event):
        db.session.add(EventRecord(name=type(event).__name__, payload=event.to_dict()))

    def events(self) -> List[Event]:
        records = EventRecord.query.order_by(EventRecord.id).all()
        return [event_from_dict(r.payload) for r in records]
