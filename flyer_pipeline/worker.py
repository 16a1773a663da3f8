"""Temporal worker: runs event dispatch and the stuck-run reaper.

Run locally with:
    python -m flyer_pipeline.worker

Requires a running Temporal server and USE_SQL_STORE=true so the worker
and the API share documents.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys

import structlog
from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.worker import Worker

from flyer_pipeline.activities.dispatch import DispatchActivities
from flyer_pipeline.config import settings
from flyer_pipeline.engine.reaper import RunReaper
from flyer_pipeline.logging import configure_logging
from flyer_pipeline.services import build_services
from flyer_pipeline.workflows.dispatch import EventDispatchWorkflow

logger = structlog.get_logger()

WORKFLOWS = [EventDispatchWorkflow]


async def create_temporal_client() -> Client:
    """Create a Temporal client using settings.

    Supports both local Temporal (plain TCP) and Temporal Cloud (TLS + API key).
    """
    if settings.temporal_api_key:
        return await Client.connect(
            target_host=settings.temporal_address,
            namespace=settings.temporal_namespace,
            tls=True,
            api_key=settings.temporal_api_key,
            data_converter=pydantic_data_converter,
        )
    return await Client.connect(
        target_host=settings.temporal_address,
        namespace=settings.temporal_namespace,
        data_converter=pydantic_data_converter,
    )


async def run_worker() -> None:
    """Connect to Temporal and run the worker and reaper until interrupted."""
    logger.info(
        "worker_connecting",
        address=settings.temporal_address,
        namespace=settings.temporal_namespace,
        task_queue=settings.temporal_task_queue,
    )

    try:
        client = await create_temporal_client()
    except Exception:
        logger.exception(
            "worker_connection_failed",
            address=settings.temporal_address,
            namespace=settings.temporal_namespace,
        )
        raise

    services = build_services(temporal_client=client)
    dispatch = DispatchActivities(services.engine)
    worker = Worker(
        client,
        task_queue=settings.temporal_task_queue,
        workflows=WORKFLOWS,
        activities=[dispatch.dispatch_event],
    )
    reaper = asyncio.create_task(RunReaper(services.engine).run_forever())

    logger.info(
        "worker_started",
        task_queue=settings.temporal_task_queue,
        pipeline_workflows=sorted(services.engine.workflows),
    )
    try:
        await worker.run()
    finally:
        reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper
        await services.close()
        logger.info("worker_stopped")


def main() -> None:
    """Entrypoint for `python -m flyer_pipeline.worker`."""
    configure_logging("worker")
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("worker_fatal_error")
        sys.exit(1)


if __name__ == "__main__":
    main()
