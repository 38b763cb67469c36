import copy
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, List, Optional

from entities import Policy, Claim, Event


class MemoryStore:
    """Keeps ledger state in dictionaries. Transactions snapshot and restore on failure."""

    def __init__(self, owner: str):
        self.owner = owner
        self.paused = False
        self.balance = 0
        self.policies: Dict[str, Policy] = {}
        self.claims: Dict[str, List[Claim]] = {}
        self.accounts: Dict[str, int] = {}
        self.event_log: List[Event] = []

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self._state())
        try:
            yield
        except BaseException:
            self._restore(snapshot)
            raise

    def _state(self):
        return {
            'owner': self.owner,
            'paused': self.paused,
            'balance': self.balance,
            'policies': self.policies,
            'claims': self.claims,
            'accounts': self.accounts,
            'event_log': self.event_log,
        }

    def _restore(self, snapshot):
        for key, value in snapshot.items():
            setattr(self, key, value)

    # Ledger state
    def get_owner(self) -> str:
        return self.owner

    def set_owner(self, owner: str):
        self.owner = owner

    def is_paused(self) -> bool:
        return self.paused

    def set_paused(self, paused: bool):
        self.paused = paused

    def get_balance(self) -> int:
        return self.balance

    def set_balance(self, balance: int):
        self.balance = balance

    # Policies
    def get_policy(self, holder: str) -> Optional[Policy]:
        policy = self.policies.get(holder)
        return replace(policy) if policy else None

    def save_policy(self, holder: str, policy: Policy):
        self.policies[holder] = replace(policy)

    # Claims
    def get_claims(self, holder: str) -> List[Claim]:
        return [replace(c) for c in self.claims.get(holder, [])]

    def count_claims(self, holder: str) -> int:
        return len(self.claims.get(holder, []))

    def append_claim(self, holder: str, claim: Claim) -> int:
        sequence = self.claims.setdefault(holder, [])
        sequence.append(replace(claim))
        return len(sequence) - 1

    def save_claim(self, holder: str, index: int, claim: Claim):
        self.claims[holder][index] = replace(claim)

    # Account book for transferred value
    def account_balance(self, identity: str) -> int:
        return self.accounts.get(identity, 0)

    def credit(self, identity: str, amount: int):
        self.accounts[identity] = self.accounts.get(identity, 0) + amount

    # Event log
    def record_event(self, event: Event):
        self.event_log.append(event)

    def events(self) -> List[Event]:
        return list(self.event_log)
