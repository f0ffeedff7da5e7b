from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from threading import Lock
from typing import Dict, Iterable, Mapping, Optional, Set


class PrincipalDirectory(ABC):
    """Resolves principals and answers membership questions."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def is_member(self, caller: str, principal: str) -> bool:
        """True when ``caller`` is ``principal`` or a (transitive) member of it."""
        raise NotImplementedError


class StaticPrincipalDirectory(PrincipalDirectory):
    """In-process directory: principal name -> principals it is a member of."""

    def __init__(self, memberships: Optional[Mapping[str, Iterable[str]]] = None):
        self._lock = Lock()
        self._member_of: Dict[str, Set[str]] = {}
        for name, roles in (memberships or {}).items():
            self.add_principal(name)
            for role in roles:
                self.grant(role, name)

    def add_principal(self, name: str) -> None:
        with self._lock:
            self._member_of.setdefault(name, set())

    def grant(self, role: str, member: str) -> None:
        with self._lock:
            self._member_of.setdefault(role, set())
            self._member_of.setdefault(member, set()).add(role)

    def revoke(self, role: str, member: str) -> None:
        with self._lock:
            self._member_of.get(member, set()).discard(role)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._member_of

    def is_member(self, caller: str, principal: str) -> bool:
        with self._lock:
            if caller not in self._member_of or principal not in self._member_of:
                return False
            seen = {caller}
            pending = deque([caller])
            while pending:
                current = pending.popleft()
                if current == principal:
                    return True
                for role in self._member_of.get(current, ()):
                    if role not in seen:
                        seen.add(role)
                        pending.append(role)
            return False
