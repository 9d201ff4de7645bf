"""
Proof policy enforcer.

Marks the top N ranked runs of a category as requiring a demo and the top M
as requiring a video. The two thresholds are independent. Only the
requirement flags move with rank; satisfied flags belong to proof ingestion
and are never cleared here.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from boards.data_models.sync import ProofResult
from boards.database.models import Category
from boards.utils.ranking import (
    CategorySnapshot, is_rankable, load_category_snapshot, order_runs, quarantine_invalid_runs
)

logger = logging.getLogger(__name__)


class ProofPolicyEnforcer:

    async def apply(
        self,
        session: AsyncSession,
        category: Category,
        snapshot: Optional[CategorySnapshot] = None
    ) -> ProofResult:
        if snapshot is None:
            snapshot = await load_category_snapshot(session, category)
            quarantine_invalid_runs(snapshot)

        result = ProofResult()
        ranked = order_runs(run for run in snapshot.runs if is_rankable(run, snapshot))
        ranked_ids = {run.id for run in ranked}

        for index, run in enumerate(ranked):
            demo_required = index < category.demo_threshold
            video_required = index < category.video_threshold
            if self._set_flags(run, demo_required, video_required):
                result.changed += 1
            result.demo_required += int(demo_required)
            result.video_required += int(video_required)

        # Unranked runs (removed, banned, quarantined, coop sources) require nothing
        for run in snapshot.runs:
            if run.id not in ranked_ids and self._set_flags(run, False, False):
                result.changed += 1

        await session.flush()
        if result.changed:
            logger.info(
                f"Category {category.id}: proof flags changed on {result.changed} run(s) "
                f"(demo required {result.demo_required}, video required {result.video_required})"
            )
        return result

    @staticmethod
    def _set_flags(run, demo_required: bool, video_required: bool) -> bool:
        if run.demo_required == demo_required and run.video_required == video_required:
            return False
        run.demo_required = demo_required
        run.video_required = video_required
        return True
