"""
Capability gate consumed by the inventory engine.

The kernel does not implement authorization.  It asks an injected
``CapabilityChecker`` a yes/no question before privileged operations
(stock adjustments) and raises ``CapabilityDeniedError`` on "no".
"""

from typing import Protocol, runtime_checkable
from uuid import UUID

INVENTORY_ADJUST = "inventory.adjust"


@runtime_checkable
class CapabilityChecker(Protocol):
    """``has_capability(actor, capability_key, branch)`` predicate."""

    def has_capability(
        self,
        actor_id: UUID | None,
        capability: str,
        branch_id: UUID | None = None,
    ) -> bool: ...


class AllowAllCapabilities:
    """Grants every capability.  For seeders, CLIs and tests."""

    def has_capability(self, actor_id, capability, branch_id=None) -> bool:
        return True


class DenyAllCapabilities:
    """Refuses every capability."""

    def has_capability(self, actor_id, capability, branch_id=None) -> bool:
        return False


class StaticCapabilities:
    """
    Capability table fixed at construction.

    ``grants`` maps actor id -> set of capability keys.  A key of the form
    ``"inventory.adjust@<branch_id>"`` scopes the grant to one branch.
    """

    def __init__(self, grants: dict[UUID, set[str]]):
        self._grants = {actor: frozenset(keys) for actor, keys in grants.items()}

    def has_capability(self, actor_id, capability, branch_id=None) -> bool:
        keys = self._grants.get(actor_id, frozenset())
        if capability in keys:
            return True
        return branch_id is not None and f"{capability}@{branch_id}" in keys
