"""Account lookup collaborator.

The engine only needs to know whether an account exists, which role it holds
and whether it is active (to validate ``assign`` targets). Authentication and
account management live outside the engine.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from deedflow.types import Role


@dataclass(frozen=True)
class Account:
    id: str
    role: Role
    is_active: bool = True
    name: Optional[str] = None

    @property
    def is_active_staff(self) -> bool:
        return self.is_active and self.role.is_staff


class InMemoryAccountDirectory:
    """Dictionary-backed AccountDirectory."""

    def __init__(self, accounts: Iterable[Account] = ()):
        self._accounts: Dict[str, Account] = {a.id: a for a in accounts}

    def add(self, account: Account) -> None:
        self._accounts[account.id] = account

    def get(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)


__all__ = ["Account", "InMemoryAccountDirectory"]
