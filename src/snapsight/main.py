"""Application entry point: logging setup and pipeline lifespan."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from snapsight.config import Settings, get_settings
from snapsight.pipeline import CameraPipeline

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(settings: Settings | None = None) -> AsyncIterator[CameraPipeline]:
    """Pipeline lifespan: start the model load on entry, release the worker on exit.

    The model loads in the background; the yielded pipeline publishes each
    loading stage so the presentation layer can show progress.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    logger.info(
        "Starting SnapSight (device=%s, kind=%s, model=%s)",
        settings.device,
        settings.model_kind,
        settings.active_model,
    )

    pipeline = CameraPipeline(settings)
    load_task = asyncio.create_task(pipeline.start())
    try:
        yield pipeline
    finally:
        logger.info("Shutting down SnapSight")
        # Model loading cannot be cancelled; let it settle before releasing the worker.
        await load_task
        pipeline.close()
        logger.info("SnapSight shutdown complete")
