from __future__ import annotations

import asyncio

import structlog
from nats.aio.client import Client as NATS

from archive_index_pipeline.events import IndexSwappedEvent

logger = structlog.get_logger(__name__)


async def publish_event(
    nats_url: str,
    subject: str,
    event: IndexSwappedEvent,
    *,
    flush_timeout_s: float = 2.0,
) -> None:
    """
    Publishes one swap notification. The event id doubles as message id so a
    JetStream consumer drops redelivered duplicates.
    """
    nc = NATS()
    await nc.connect(servers=[nats_url])
    try:
        await nc.publish(
            subject,
            event.model_dump_json().encode("utf-8"),
            headers={"Nats-Msg-Id": str(event.event_id)},
        )
        await nc.flush(timeout=flush_timeout_s)
    finally:
        await nc.close()
    logger.info("events.published", subject=subject, event_type=event.event_type, run_id=str(event.run_id))


def publish_event_sync(nats_url: str, subject: str, event: IndexSwappedEvent) -> None:
    asyncio.run(publish_event(nats_url, subject, event))
