"""
Push-notification listener for backend change events.

The backend publishes row-level and session-level changes as server-sent
events.  Every ``data:`` line just means "something changed", and the
listener calls ``on_change``; the only field it reads is ``event``, to stop
once the import has finished.
"""

import asyncio
import json
import logging
from typing import Any, Callable

import httpx

from holdings_import.config import PUSH_RECONNECT_SECONDS, PUSH_URL

logger = logging.getLogger(__name__)

# Event that ends an import; the listener stops after delivering it
FINAL_EVENT = "import_finished"


def parse_event_line(line: str) -> dict[str, Any] | None:
    """Return the JSON (or raw text) payload of an SSE ``data:`` line."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data:
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        return {"raw": data}
    return payload if isinstance(payload, dict) else {"raw": payload}


class PushListener:
    def __init__(
        self,
        on_change: Callable[[dict[str, Any]], None],
        *,
        year: int,
        session_id: str,
        url: str | None = None,
        reconnect_delay: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.on_change = on_change
        self.year = year
        self.session_id = session_id
        self.url = url or PUSH_URL
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else PUSH_RECONNECT_SECONDS
        self._client = client
        self._stopped = False
        self.received = 0

    def stop(self):
        self._stopped = True

    async def listen_once(self, client: httpx.AsyncClient) -> int:
        """Consume one stream until it closes; returns the number of events seen."""
        seen = 0
        params = {"year": self.year, "session_id": self.session_id}
        async with client.stream("GET", self.url, params=params, timeout=None) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if self._stopped:
                    break
                payload = parse_event_line(line)
                if payload is None:
                    continue
                seen += 1
                self.received += 1
                self.on_change(payload)
                if payload.get("event") == FINAL_EVENT:
                    self._stopped = True
                    break
        return seen

    async def listen(self):
        """Listen until ``stop()``; reconnects after transport errors."""
        if not self.url:
            logger.info("No PUSH_URL configured; push notifications disabled")
            return

        client = self._client or httpx.AsyncClient()
        try:
            while not self._stopped:
                try:
                    await self.listen_once(client)
                except httpx.HTTPError as e:
                    logger.warning("Push channel error (%s); reconnecting in %.0fs", e, self.reconnect_delay)
                if not self._stopped:
                    await asyncio.sleep(self.reconnect_delay)
        finally:
            if self._client is None:
                await client.aclose()
