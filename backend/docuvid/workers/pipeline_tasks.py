"""Background execution of pipeline runs.

The API schedules run_pipeline_background() after responding. The store claim
is what guarantees single-flight across processes; IN_FLIGHT only avoids
spawning a redundant runner inside this process while one is already active.
"""

import logging
import uuid
from typing import Optional

from docuvid.orchestrator.pipeline import PipelineServices, run_pipeline
from docuvid.orchestrator.store import RunStateStore

logger = logging.getLogger(__name__)

# Video ids with a runner active in this process
IN_FLIGHT: set[str] = set()


async def run_pipeline_background(
    video_id: uuid.UUID,
    store: Optional[RunStateStore] = None,
    services: Optional[PipelineServices] = None,
) -> None:
    """Run the pipeline for video_id unless this process is already running it.

    Creates its own store sessions; never shares the request's state.
    """
    key = str(video_id)
    if key in IN_FLIGHT:
        logger.info(f"Video {video_id}: runner already active in this process")
        return

    IN_FLIGHT.add(key)
    try:
        status = await run_pipeline(video_id, store=store, services=services)
        logger.info(f"Video {video_id}: background run finished with {status}")
    except Exception as e:
        # run_pipeline records its own failures; this only guards the task
        logger.error(f"Background pipeline failed for {video_id}: {type(e).__name__}: {e}")
    finally:
        IN_FLIGHT.discard(key)
