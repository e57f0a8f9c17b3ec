from __future__ import annotations

import asyncio
import logging

from .errors import RunTimeout

log = logging.getLogger(__name__)

RETRY_INTERVAL = 0.05  # seconds between connection attempts


async def dial_until_ready(
    host: str,
    port: int,
    timeout: float,
    interval: float = RETRY_INTERVAL,
) -> None:
    """Block until ``host:port`` accepts a TCP connection.

    The process we just launched starts listening at some unknown point
    after exec, so keep dialing until a connection succeeds. Raises
    RunTimeout once ``timeout`` seconds have elapsed without one.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    address = f"{host}:{port}"
    attempts = 0

    while True:
        attempts += 1
        remaining = max(deadline - loop.time(), interval)
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=remaining,
            )
        except (OSError, asyncio.TimeoutError):
            pass
        else:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            log.debug("%s ready after %d attempt(s)", address, attempts)
            return

        if loop.time() >= deadline:
            raise RunTimeout(address, timeout)
        await asyncio.sleep(interval)
