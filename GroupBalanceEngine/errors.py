"""
Errors Module

Exception types raised by the balance engine.

The types subclass the built-in exceptions the API layer already maps:
    - ValueError   -> 400 (bad input from the caller)
    - RuntimeError -> 503 (balances cannot be computed right now)

ConcurrentUpdateError is mapped to 409 ahead of the RuntimeError rule.
"""


class ValidationError(ValueError):
    """Raised when an expense, split or settlement is invalid."""


class DataIntegrityError(RuntimeError):
    """
    Raised when stored group data is inconsistent at aggregation time.

    A group whose balances raise this error has unknown balances. Callers
    must never treat it as "all settled".
    """

    def __init__(self, message: str, group_id: str = None, record_id: str = None):
        super().__init__(message)
        self.group_id = group_id
        self.record_id = record_id


class BalanceInvariantError(RuntimeError):
    """Raised when the aggregated ledger fails its own consistency checks."""


class OutstandingBalanceError(ValueError):
    """Raised when a member cannot leave a group because they still owe or are owed money."""

    def __init__(self, member_id: str, balances: dict):
        self.member_id = member_id
        self.balances = balances
        summary = ", ".join(f"{currency} {amount}" for currency, amount in sorted(balances.items()))
        super().__init__(f"Member {member_id} has an outstanding balance: {summary}")


class MembershipError(ValueError):
    """Raised when a member may not leave or be removed (group creator, last member)."""


class ConcurrentUpdateError(RuntimeError):
    """Raised when a record kept changing underneath an update and every retry lost."""
