"""Demo entrypoint wiring the telemetry agent end to end.

This module contains a small manual "smoke test" that:

- Loads configuration from environment (and `.env`).
- Opens the DuckDB-backed durable store.
- Starts the agent, tracks a handful of records of every kind, flushes them to
  the configured collector, and shuts down (persisting anything undelivered).

It is **not** production orchestration; it is a convenient manual harness for
pointing the agent at a real collector.
"""

from __future__ import annotations

import asyncio
import os

import structlog

from agent.sdk import TelemetryAgent
from config import load_config
from logging_config import configure_logging

logger = structlog.get_logger(__name__)


async def run_demo() -> None:
    """Track one record per kind, flush, and close."""
    cfg = load_config()
    configure_logging(json_output=cfg.logging.json_output, level=cfg.logging.level)

    agent = TelemetryAgent.from_config(
        cfg,
        page_url=os.getenv("DEMO_PAGE_URL", "https://example.test/demo"),
        user_agent="telemetry-agent-demo",
    )
    try:
        init = await agent.start(cfg.delivery)
        logger.info("agent ready", queue_length=init.queue_length, restored=init.restored_count)

        await agent.track("behavior", {"behavior_type": "click", "target": "buy-button", "position": {"x": 10, "y": 20}})
        await agent.track("error", {"error_type": "js", "message": "demo error", "stack": ""})
        await agent.track("exposure", {"element_info": {"tag_name": "div"}, "exposure_time": 1200, "visible_percent": 80})
        await agent.track("performance", {"performance_type": "lcp", "value": 1834.2})
        await agent.track("resource", {"resource_type": "script", "url": "https://example.test/app.js", "duration": 120})

        result = await agent.flush()
        if result is None:
            logger.info("nothing delivered")
        else:
            logger.info("delivery finished", **result.model_dump(exclude={"type"}))
    finally:
        await agent.aclose()


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py`."""
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
