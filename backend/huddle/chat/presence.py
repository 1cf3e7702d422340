"""Per-group online-user registry.

A single ``PresenceRegistry`` is constructed by the ``ConnectionManager`` at
startup. It is process-local; running several server processes would need
an external shared store behind the same interface.
"""
import logging
from typing import Dict, List, Set

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Maps group id -> set of online user ids.

    Empty groups are deleted outright, so ``groups()`` never reports a
    group with nobody online.
    """

    def __init__(self) -> None:
        self._online: Dict[str, Set[str]] = {}

    def add(self, group_id: str, user_id: str) -> None:
        self._online.setdefault(group_id, set()).add(user_id)

    def remove(self, group_id: str, user_id: str) -> bool:
        """Remove a user from a group's set.

        Returns:
            True if the user was present.
        """
        online = self._online.get(group_id)
        if online is None or user_id not in online:
            return False
        online.discard(user_id)
        if not online:
            del self._online[group_id]
            logger.debug(f"[Presence] Group {group_id} has nobody online, dropped")
        return True

    def snapshot(self, group_id: str) -> List[str]:
        """Sorted copy of the group's online ids (empty if unknown)."""
        return sorted(self._online.get(group_id, ()))

    def is_online(self, group_id: str, user_id: str) -> bool:
        return user_id in self._online.get(group_id, ())

    def groups(self) -> List[str]:
        return list(self._online.keys())

    def clear(self) -> None:
        self._online.clear()
