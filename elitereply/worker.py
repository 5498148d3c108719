"""
ARQ background worker: runs Jey turns enqueued by the API (job id jey:{ticket}:{message}).
Requires STORE_BACKEND=redis so the API and the worker share tickets and messages.
"""

import logging
from dataclasses import replace

from arq import run_worker
from arq.connections import RedisSettings

from elitereply.activity import publish_event
from elitereply.config import REDIS_CONN_TIMEOUT, REDIS_URL
from elitereply.desk import build_desk, build_store

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    ctx["desk"] = build_desk(store=build_store("redis"))
    logger.info("Worker desk ready (partners: %d).", len(ctx["desk"].partners()))


async def shutdown(ctx: dict) -> None:
    desk = ctx.get("desk")
    if desk is not None:
        await desk.notifier.drain()


async def run_assistant_turn(ctx: dict, ticket_id: str, message_id: str) -> dict:
    """ARQ job: one Jey turn for the given inbound message."""
    desk = ctx.get("desk") or build_desk(store=build_store("redis"))
    logger.info("Jey turn for ticket %s (message %s)...", ticket_id, message_id)
    try:
        reply = await desk.run_assistant_turn(ticket_id, message_id)
    except Exception as e:
        logger.exception("Failed Jey turn for ticket %s: %s", ticket_id, e)
        raise
    ticket = desk.get_ticket(ticket_id)
    result = {
        "ticket_id": ticket_id,
        "message_id": message_id,
        "reply_id": reply.id if reply else None,
        "reply_type": reply.type.value if reply else None,
        "phase": ticket.phase,
    }
    publish_event("assistant_replied" if reply else "assistant_skipped", **result)
    return result


class WorkerSettings:
    functions = [run_assistant_turn]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = replace(
        RedisSettings.from_dsn(REDIS_URL),
        conn_timeout=REDIS_CONN_TIMEOUT,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Worker starting (Redis: %s).", REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL)
    run_worker(WorkerSettings)
