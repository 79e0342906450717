"""Admission checks against a user's daily fair share."""

import logging

from quota_pool.allocation import AllocationEngine
from quota_pool.models import AllocationCheck

logger = logging.getLogger(__name__)


class QuotaGate:
    """Allows or denies a request before any key is touched.

    Checking never charges the user; usage is recorded by the dispatcher
    only after the upstream call succeeds.
    """

    def __init__(self, engine: AllocationEngine):
        self.engine = engine

    async def can_proceed(
        self, user_id: str, model_name: str, estimated_cost: int = 1
    ) -> AllocationCheck:
        allocation = await self.engine.get_user_allocation(user_id, model_name)
        allowed = (
            allocation.can_make_request
            and allocation.used + max(estimated_cost, 1) <= allocation.allocated
        )

        if not allowed:
            logger.info(
                "Quota denied for user %s on %s (%d/%d)",
                user_id,
                model_name,
                allocation.used,
                allocation.allocated,
            )
            return AllocationCheck(
                allowed=False,
                allocation=allocation,
                reason=(
                    "Daily request limit exceeded. You've used "
                    f"{allocation.used}/{allocation.allocated} requests today. "
                    "Your allocation may increase if fewer users are active."
                ),
            )

        return AllocationCheck(allowed=True, allocation=allocation)
