"""
Capability table: principal -> set of named roles.

Contracts check roles at the top of each operation; how roles are granted
stays out of the state machines.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterable

from .addresses import normalize_address
from .errors import LastAdminError, UnauthorizedError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    REQUESTER = "requester"
    SECRETARY = "secretary"
    COMMITTEE = "committee"
    FINANCE = "finance"
    DIRECTOR = "director"
    RELAYER = "relayer"


RoleListener = Callable[[Role, str, bool], None]


class RoleTable:
    """Role membership with admin-gated grant and revoke."""

    def __init__(self, admin: str):
        self._members: dict[Role, set[str]] = {role: set() for role in Role}
        self._members[Role.ADMIN].add(normalize_address(admin))
        self._listeners: list[RoleListener] = []

    def add_listener(self, listener: RoleListener) -> None:
        """Call ``listener(role, account, granted)`` after every membership change."""
        self._listeners.append(listener)

    def has_role(self, account: str, role: Role) -> bool:
        return normalize_address(account) in self._members[Role(role)]

    def has_any_role(self, account: str, roles: Iterable[Role]) -> bool:
        return any(self.has_role(account, role) for role in roles)

    def require(self, account: str, role: Role) -> None:
        if not self.has_role(account, role):
            raise UnauthorizedError(normalize_address(account), Role(role).value)

    def require_any(self, account: str, roles: Iterable[Role]) -> None:
        roles = list(roles)
        if not self.has_any_role(account, roles):
            raise UnauthorizedError(
                normalize_address(account), "|".join(Role(r).value for r in roles)
            )

    def members(self, role: Role) -> list[str]:
        return sorted(self._members[Role(role)])

    def grant_role(self, caller: str, role: Role, account: str) -> bool:
        """Grant ``role`` to ``account``. Returns False if it was already held."""
        self.require(caller, Role.ADMIN)
        role = Role(role)
        addr = normalize_address(account)
        if addr in self._members[role]:
            return False
        self._members[role].add(addr)
        logger.info("Granted %s to %s", role.value, addr)
        self._notify(role, addr, True)
        return True

    def revoke_role(self, caller: str, role: Role, account: str) -> bool:
        """Revoke ``role`` from ``account``. Returns False if it was not held."""
        self.require(caller, Role.ADMIN)
        role = Role(role)
        addr = normalize_address(account)
        if addr not in self._members[role]:
            return False
        if role is Role.ADMIN and len(self._members[role]) == 1:
            raise LastAdminError(addr)
        self._members[role].discard(addr)
        logger.info("Revoked %s from %s", role.value, addr)
        self._notify(role, addr, False)
        return True

    def _notify(self, role: Role, account: str, granted: bool) -> None:
        for listener in self._listeners:
            listener(role, account, granted)
