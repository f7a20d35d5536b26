"""Runs a logging-only bot with repository-relative imports."""

from __future__ import annotations

import logging
import sys
from pathlib import Path


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))

    # Lazy import after adjusting sys.path
    from guildbot import Client, EventHandler, get_settings  # type: ignore

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    log = logging.getLogger("guildbot.run")

    class LoggingHandler(EventHandler):
        async def on_ready(self, event, ctx):
            log.info("Ready as session %s (shard %s/%s)", event.session_id, ctx.session.shard_id, ctx.session.shard_count)

        async def on_message_create(self, event, ctx):
            log.info("Message %s in channel %s: %s", event.id, event.channel_id, event.content)

        async def on_group_message_create(self, event, ctx):
            log.info("Group message %s in %s: %s", event.id, event.group_openid, event.content)

        async def on_c2c_message_create(self, event, ctx):
            log.info("C2C message %s: %s", event.id, event.content)

        async def on_unknown_event(self, event, ctx):
            log.info("Unhandled event %s", event.event_type)

    Client(LoggingHandler(), settings=settings).run()


if __name__ == "__main__":
    main()
