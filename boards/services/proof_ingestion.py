"""
Proof ingestion: the inbound call that records uploaded demo/video proof.

Proof is recorded against an upstream entry id and lands on every run built
from that entry, i.e. the player's source run and, in coop categories, the
merged run that entry belongs to. Input is trusted verbatim.
"""

import logging
from typing import List, Optional

from boards.database.models import Run
from boards.services.base import BaseService
from boards.utils.ranking import find_runs_by_entry
from boards.utils.sync_exceptions import RunNotFoundError

logger = logging.getLogger(__name__)


class ProofIngestionService(BaseService):

    async def mark_proof(
        self,
        entry_id: str,
        demo: bool = False,
        video: bool = False,
        category_id: Optional[int] = None
    ) -> List[Run]:
        """
        Mark demo and/or video proof as satisfied for an entry.

        Raises:
            ValueError: neither demo nor video requested
            RunNotFoundError: no run was built from the entry
        """
        if not demo and not video:
            raise ValueError("At least one of demo or video must be marked")

        async def mark() -> List[Run]:
            async with self.get_session() as session:
                runs = await find_runs_by_entry(session, entry_id, category_id)
                if not runs:
                    raise RunNotFoundError(entry_id)
                for run in runs:
                    if demo:
                        run.demo_satisfied = True
                    if video:
                        run.video_satisfied = True
                return runs

        runs = await self.execute_with_retry(mark)
        logger.info(
            f"Proof recorded for entry {entry_id} (demo={demo}, video={video}) on run(s) "
            f"{', '.join(str(run.id) for run in runs)}"
        )
        return runs
