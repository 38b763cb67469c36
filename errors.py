class LedgerError(Exception):
    """Base class for rejected ledger operations. ``reason`` is the caller-facing string."""

    category = "Ledger error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UnauthorizedError(LedgerError):
    category = "Unauthorized"


class StateGuardError(LedgerError):
    category = "State guard"


class ValidationError(LedgerError):
    category = "Validation error"


class TransferError(LedgerError):
    category = "Transfer failed"


class ReentrancyError(LedgerError):
    category = "Reentrant call"


class ResourceNotFoundError(Exception):
    pass


class DatabaseError(Exception):
    pass
