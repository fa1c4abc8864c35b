"""Demo entrypoint wiring a transport into standard logging.

This module contains a small, end-to-end "smoke test" that:

- Loads configuration from environment (defaults to an in-memory DuckDB store
  when `LOGSINK_BACKEND` is unset).
- Tails the table through a live stream while logging a few records.
- Queries the records back and prints them.

It is **not** intended to be production wiring; it is a convenient manual
integration harness.
"""

from __future__ import annotations

import asyncio
import logging
import os

from config import load_config
from logsink import LogSinkHandler, LogSinkTransport


async def _tail(transport: LogSinkTransport) -> None:
    """Print every record inserted while the demo runs."""
    async for record in transport.stream():
        print(f"[tail] {record['level']}: {record['message']}")


async def run_demo() -> None:
    """Log through `logging`, tail the inserts, then query them back."""
    os.environ.setdefault("LOGSINK_BACKEND", "duckdb")
    cfg = load_config()

    transport = LogSinkTransport(cfg)
    tail_task = asyncio.create_task(_tail(transport), name="log-tail")
    handler = LogSinkHandler(transport)

    demo_logger = logging.getLogger("demo")
    demo_logger.setLevel(logging.DEBUG)
    demo_logger.addHandler(handler)
    try:
        await transport.wait_ready()

        demo_logger.info("demo started", extra={"pid": os.getpid()})
        demo_logger.warning("disk almost full", extra={"free_mb": 120})
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            demo_logger.exception("something failed")

        await transport.flush()
        await asyncio.sleep(0.1)

        done: asyncio.Future[list[dict]] = asyncio.get_running_loop().create_future()
        transport.query(
            {"order": "desc", "rows": 10},
            lambda error, results: done.set_exception(error) if error else done.set_result(results),
        )
        for record in await done:
            print(f"[query] {record['timestamp'].isoformat()} {record['level']}: {record['message']}")
    finally:
        demo_logger.removeHandler(handler)
        await transport.aclose()
        tail_task.cancel()
        await asyncio.gather(tail_task, return_exceptions=True)


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py`."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
