import asyncio
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx
import websockets
from loguru import logger


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    Keys: events_received, updates_received, report_errors, reconnect_count,
          bytes_received, last_event_at, connected_at.
    """
    return {
        "events_received": 0,
        "updates_received": 0,
        "report_errors": 0,
        "reconnect_count": 0,
        "bytes_received": 0,
        "last_event_at": None,
        "connected_at": datetime.now(timezone.utc).isoformat()
    }


def backoff_delay(attempt: int, base_delay_s: float = 1.0, max_delay_s: float = 32.0) -> float:
    """Exponential backoff with up to 10% jitter."""
    delay = min(base_delay_s * (2 ** attempt), max_delay_s)
    return delay + random.uniform(0, delay * 0.1)


async def with_reconnect(
    connect_fn: Callable[[], Awaitable[None]],
    stats: dict,
    duration_s: float,
    base_delay_s: float = 1.0,
    max_delay_s: float = 32.0,
    client_id: str = "unknown",
) -> None:
    """
    Runs `connect_fn` until `duration_s` has elapsed, reconnecting with
    exponential backoff whenever the connection drops.
    """
    loop = asyncio.get_running_loop()
    attempt = 0
    start_time = loop.time()

    while True:
        remaining = duration_s - (loop.time() - start_time)
        if remaining <= 0:
            break

        try:
            await asyncio.wait_for(connect_fn(), timeout=remaining)
            attempt = 0
        except asyncio.TimeoutError:
            # Reached max duration normally
            break
        except (ConnectionError, OSError, websockets.WebSocketException, httpx.HTTPError) as e:
            attempt += 1
            delay = backoff_delay(attempt, base_delay_s, max_delay_s)
            stats["reconnect_count"] += 1
            logger.warning(f"client_id={client_id} event=reconnect attempt={attempt} delay_s={delay:.2f} reason='{e}'")
            remaining = duration_s - (loop.time() - start_time)
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))
