"""Per-request group membership checks.

Membership can change while a connection is open, so every group-scoped
request goes through ``require_member`` and re-reads the group. Nothing is
cached from the join.
"""
import logging

from huddle.errors import BadRequest, Forbidden, NotFound
from huddle.ids import is_valid_id
from huddle.store.runner import run_bounded
from huddle.store.schemas import GroupRecord
from huddle.store.service import ChatStore

logger = logging.getLogger(__name__)


class MembershipGate:
    def __init__(self, store: ChatStore, timeout: float = 5.0) -> None:
        self.store = store
        self.timeout = timeout

    async def require_member(self, group_id: str, user_id: str) -> GroupRecord:
        """Load the group and check that user_id is a current member.

        Raises:
            BadRequest: group_id is not a storage identifier.
            NotFound: no such group.
            Forbidden: user is not a member.
        """
        if not is_valid_id(group_id):
            raise BadRequest("Bad groupId")
        group = await run_bounded(self.store.get_group, group_id, timeout=self.timeout)
        if group is None:
            logger.warning(f"[Gate] Group {group_id} not found")
            raise NotFound("Group not found")
        if not group.is_member(user_id):
            logger.warning(f"[Gate] User {user_id} is not a member of group {group_id}")
            raise Forbidden("Not a member of this group")
        return group
