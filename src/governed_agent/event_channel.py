"""
Reconnecting Event Channel

A generic long-lived server-push subscription: it emits named events, offers an
explicit close, and retries transient transport failures without caller involvement.
The concrete implementation speaks Server-Sent Events over httpx and follows the
usual EventSource rules: a non-200 answer or a non-SSE content type closes the
channel for good, while dropped connections and clean end-of-stream reconnect with
exponential backoff, honouring ``retry:`` hints and resending ``Last-Event-ID``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

import httpx
from httpx import AsyncClient, Timeout

from .credentials import CredentialProvider
from .errors import CredentialError
from .settings import StreamSettings

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, str], Awaitable[None]]
ClosedCallback = Callable[[str, Optional[int]], Awaitable[None]]


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class ServerSentEvent:
    """A single dispatched SSE message."""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Parse an SSE line stream into events.

    ``retry``-only blocks are yielded with empty data so the caller can pick up the
    new reconnection delay; other blocks without data are dropped.
    """
    event_name = ""
    data_lines: list[str] = []
    event_id: Optional[str] = None
    retry: Optional[int] = None

    async for raw_line in lines:
        line = raw_line.rstrip("\r")
        if line == "":
            if data_lines or retry is not None:
                yield ServerSentEvent(
                    event=event_name or "message",
                    data="\n".join(data_lines),
                    id=event_id,
                    retry=retry,
                )
            event_name = ""
            data_lines = []
            retry = None
            continue

        if line.startswith(":"):
            continue

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field_name == "event":
            event_name = value
        elif field_name == "data":
            data_lines.append(value)
        elif field_name == "id":
            if "\0" not in value:
                event_id = value
        elif field_name == "retry":
            if value.isdigit():
                retry = int(value)

    if data_lines:
        yield ServerSentEvent(event=event_name or "message", data="\n".join(data_lines), id=event_id, retry=retry)


class SubscriptionHandle(Protocol):
    """Handle to one open subscription."""

    @property
    def state(self) -> ChannelState:
        ...

    async def close(self) -> None:
        ...


class EventChannel(Protocol):
    """Capability to open reconnecting subscriptions per task id."""

    def subscribe(
        self,
        task_id: str,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ) -> SubscriptionHandle:
        ...


class SSESubscription:
    """One reconnecting SSE subscription; runs as a background asyncio task."""

    def __init__(
        self,
        client: AsyncClient,
        url: str,
        credentials: CredentialProvider,
        settings: StreamSettings,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ):
        self.url = url
        self._client = client
        self._credentials = credentials
        self._settings = settings
        self._on_event = on_event
        self._on_closed = on_closed

        self.state = ChannelState.CONNECTING
        self.last_event_id: Optional[str] = None
        self.reconnects = 0
        self._server_retry_delay: Optional[float] = None
        self._closed = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> "SSESubscription":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"sse:{self.url}")
        return self

    async def close(self) -> None:
        """Close the subscription; later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        self.state = ChannelState.CLOSED

        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Closing from inside an event callback; the loop exits after it returns.
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _fail(self, message: str, status_code: Optional[int] = None) -> None:
        """Close the channel for good and report it."""
        if self._closed:
            return
        self._closed = True
        self.state = ChannelState.CLOSED
        logger.warning(
            "Event stream closed",
            extra={"url": self.url, "reason": message, "status_code": status_code},
        )
        try:
            await self._on_closed(message, status_code)
        except Exception:
            logger.exception("Error in stream close handler", extra={"url": self.url})

    def _next_delay(self) -> float:
        if self._server_retry_delay is not None:
            return self._server_retry_delay
        exponent = max(self.reconnects - 1, 0)
        return min(self._settings.retry_delay * (2 ** exponent), self._settings.max_retry_delay)

    async def _run(self) -> None:
        while not self._closed:
            try:
                token = await self._credentials.get_token()
            except CredentialError as e:
                await self._fail(str(e))
                return
            except Exception as e:
                logger.exception("Failed to obtain stream credentials", extra={"url": self.url})
                await self._fail(f"Failed to obtain stream credentials: {e}")
                return

            headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
            if self.last_event_id:
                headers["Last-Event-ID"] = self.last_event_id

            try:
                async with self._client.stream(
                    "GET", self.url, params={"token": token}, headers=headers
                ) as response:
                    if response.status_code != 200:
                        await response.aread()
                        await self._fail(
                            f"Stream request failed with HTTP {response.status_code}",
                            response.status_code,
                        )
                        return

                    content_type = response.headers.get("content-type", "")
                    if "text/event-stream" not in content_type:
                        await self._fail(f"Unexpected stream content type '{content_type}'")
                        return

                    self.state = ChannelState.OPEN
                    self.reconnects = 0
                    logger.debug("Event stream open", extra={"url": self.url})

                    async for message in iter_sse_events(response.aiter_lines()):
                        if message.id is not None:
                            self.last_event_id = message.id
                        if message.retry is not None:
                            self._server_retry_delay = message.retry / 1000.0
                        if not message.data:
                            continue
                        try:
                            await self._on_event(message.event, message.data)
                        except Exception:
                            logger.exception(
                                "Error in stream event handler",
                                extra={"url": self.url, "event": message.event},
                            )
                        if self._closed:
                            return
            except httpx.TransportError as e:
                logger.debug(
                    "Event stream transport error; reconnecting",
                    extra={"url": self.url, "error": str(e)},
                )
            except httpx.HTTPError as e:
                await self._fail(f"Event stream failed: {e}")
                return
            except Exception as e:
                logger.exception("Unexpected event stream failure", extra={"url": self.url})
                await self._fail(f"Event stream failed: {e}")
                return

            if self._closed:
                return

            self.reconnects += 1
            max_reconnects = self._settings.max_reconnects
            if max_reconnects and self.reconnects > max_reconnects:
                await self._fail("Connection closed by server")
                return

            self.state = ChannelState.CONNECTING
            delay = self._next_delay()
            logger.debug(
                "Reconnecting event stream",
                extra={"url": self.url, "attempt": self.reconnects, "delay": delay},
            )
            await asyncio.sleep(delay)


class SSEEventChannel:
    """Opens task push subscriptions at ``/chat/governed/{task_id}/stream``."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        settings: StreamSettings,
        http_client: Optional[AsyncClient] = None,
        connect_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or AsyncClient(
            timeout=Timeout(connect_timeout, read=settings.read_timeout),
            follow_redirects=True,
        )

    def stream_url(self, task_id: str) -> str:
        return f"{self.base_url}/chat/governed/{task_id}/stream"

    def subscribe(
        self,
        task_id: str,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ) -> SSESubscription:
        subscription = SSESubscription(
            self.http_client,
            self.stream_url(task_id),
            self.credentials,
            self.settings,
            on_event,
            on_closed,
        )
        return subscription.start()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
