"""Polling client that keeps a local transcript in step with the server.

The client shows user messages optimistically and then polls
``/v1/checkMessages`` for unread messages. Server echoes of messages the user
already sees are matched by ``client_message_id`` first; user messages without
a match that are younger than the echo window are treated as echoes too.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

import httpx

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 5.0
ECHO_WINDOW_S = 30.0
PROCESSED_LIMIT = 500

# raised while reading a server payload that does not have the expected shape
MALFORMED_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class LocalMessage:
    id: str
    role: str
    content: str
    created_at: datetime
    content_kind: str = "text"
    image_url: str | None = None
    client_message_id: str | None = None
    pending: bool = False
    failed: bool = False

    @classmethod
    def from_server(cls, data: dict[str, Any]) -> "LocalMessage":
        return cls(
            id=str(data["id"]),
            role="assistant" if data.get("is_admin") else "user",
            content=data.get("content") or "",
            created_at=parse_timestamp(data["created_at"]),
            content_kind=data.get("content_kind") or "text",
            image_url=data.get("image_url"),
            client_message_id=data.get("client_message_id"),
        )


class SessionSyncState:
    """Local transcript and dedup bookkeeping for one help session."""

    def __init__(
        self,
        help_session_id: str,
        *,
        echo_window: float = ECHO_WINDOW_S,
        processed_limit: int = PROCESSED_LIMIT,
    ) -> None:
        self.help_session_id = help_session_id
        self.messages: list[LocalMessage] = []
        self.closed = False
        self._echo_window = timedelta(seconds=echo_window)
        self._processed_limit = processed_limit
        self._processed: OrderedDict[str, None] = OrderedDict()

    def _remember(self, message_id: str) -> None:
        self._processed[message_id] = None
        self._processed.move_to_end(message_id)
        while len(self._processed) > self._processed_limit:
            self._processed.popitem(last=False)

    def was_processed(self, message_id: str) -> bool:
        return message_id in self._processed

    def load(self, server_messages: list[dict[str, Any]]) -> None:
        """Replace the transcript with the server's full history."""
        self.messages = []
        for data in server_messages:
            try:
                msg = LocalMessage.from_server(data)
            except MALFORMED_ERRORS as exc:
                logger.debug("Skip malformed history entry %r: %s", data, exc)
                continue
            self.messages.append(msg)
            self._remember(msg.id)

    def add_optimistic(
        self,
        content: str,
        *,
        image_url: str | None = None,
        now: datetime | None = None,
    ) -> LocalMessage:
        client_message_id = uuid4().hex
        message = LocalMessage(
            id=f"local-{client_message_id}",
            role="user",
            content=content,
            created_at=now or _utcnow(),
            content_kind="image" if image_url else "text",
            image_url=image_url,
            client_message_id=client_message_id,
            pending=True,
        )
        self.messages.append(message)
        return message

    def _find_optimistic(self, client_message_id: str | None) -> LocalMessage | None:
        if not client_message_id:
            return None
        for msg in self.messages:
            if msg.client_message_id == client_message_id and msg.role == "user":
                return msg
        return None

    def confirm(self, client_message_id: str, server_message: dict[str, Any]) -> None:
        local = self._find_optimistic(client_message_id)
        server_id = str(server_message["id"])
        if local is not None:
            local.id = server_id
            local.pending = False
            local.failed = False
            local.image_url = server_message.get("image_url", local.image_url)
        self._remember(server_id)

    def fail(self, client_message_id: str) -> None:
        local = self._find_optimistic(client_message_id)
        if local is not None:
            local.pending = False
            local.failed = True

    def reconcile(
        self, unread: list[dict[str, Any]], now: datetime | None = None
    ) -> tuple[list[LocalMessage], list[str]]:
        """Merge one poll result.

        Returns the messages appended to the transcript and the ids of admin
        messages seen in this poll, which the caller marks read.
        """
        now = now or _utcnow()
        appended: list[LocalMessage] = []
        admin_ids: list[str] = []
        local_ids = {m.id for m in self.messages}

        for data in unread:
            try:
                incoming = LocalMessage.from_server(data)
            except MALFORMED_ERRORS as exc:
                logger.debug("Skip malformed message %r: %s", data, exc)
                continue
            message_id = incoming.id
            is_admin = incoming.role == "assistant"
            if is_admin:
                admin_ids.append(message_id)

            if message_id in local_ids or self.was_processed(message_id):
                self._remember(message_id)
                continue

            if not is_admin:
                local = self._find_optimistic(incoming.client_message_id)
                if local is not None:
                    local.id = message_id
                    local.pending = False
                    local_ids.add(message_id)
                    self._remember(message_id)
                    continue
                if now - incoming.created_at < self._echo_window:
                    self._remember(message_id)
                    continue

            self.messages.append(incoming)
            local_ids.add(message_id)
            appended.append(incoming)
            self._remember(message_id)

        return appended, admin_ids


def _log_loop_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Poll loop stopped unexpectedly", exc_info=exc)


class ChatSyncClient:
    """Drive one polling loop for the currently selected session."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        poll_interval: float = POLL_INTERVAL_S,
        echo_window: float = ECHO_WINDOW_S,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._http = http
        self._poll_interval = poll_interval
        self._echo_window = echo_window
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.state: SessionSyncState | None = None

    @classmethod
    def create(
        cls,
        base_url: str,
        *,
        api_key: str,
        user_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> "ChatSyncClient":
        """Build a client that authenticates as ``user_id`` on every request."""
        http = httpx.AsyncClient(
            base_url=base_url,
            headers={"X-API-Key": api_key, "X-API-Ver": "v1", "X-User-ID": user_id},
            timeout=10,
            transport=transport,
        )
        return cls(http, **kwargs)

    @property
    def polling(self) -> bool:
        return self._task is not None and not self._task.done()

    async def select_session(
        self,
        help_session_id: str,
        messages: list[dict[str, Any]] | None = None,
        *,
        start: bool = True,
    ) -> SessionSyncState:
        """Switch to another session; the previous loop and its dedup set go away."""
        await self._stop()
        state = SessionSyncState(help_session_id, echo_window=self._echo_window)
        if messages:
            state.load(messages)
        self.state = state
        if start:
            self._task = asyncio.create_task(self._run(state))
            self._task.add_done_callback(_log_loop_exit)
        return state

    async def _run(self, state: SessionSyncState) -> None:
        while not state.closed and self.state is state:
            await self.poll_once(state)
            if state.closed or self.state is not state:
                break
            await asyncio.sleep(self._poll_interval)

    async def poll_once(
        self, state: SessionSyncState | None = None
    ) -> list[LocalMessage]:
        state = state or self.state
        if state is None or state.closed:
            return []
        try:
            resp = await self._http.get(
                "/v1/checkMessages",
                params={"help_session_id": state.help_session_id},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Poll failed, retry next tick: %s", exc)
            return []
        if self.state is not state:
            return []

        unread = data.get("unread_messages") if isinstance(data, dict) else None
        if not isinstance(data, dict) or not isinstance(unread or [], list):
            logger.debug("Unexpected poll body, retry next tick: %r", data)
            return []

        appended, admin_ids = state.reconcile(unread or [], self._clock())
        if admin_ids:
            await self._mark_read(state, admin_ids)
        if data.get("session_status") == "completed":
            state.closed = True
        return appended

    async def _mark_read(self, state: SessionSyncState, message_ids: list[str]) -> None:
        try:
            resp = await self._http.post(
                "/v1/checkMessages",
                json={
                    "help_session_id": state.help_session_id,
                    "message_ids": message_ids,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("Mark-read failed: %s", exc)

    async def send_message(self, content: str) -> LocalMessage:
        """Show the message immediately, then post it to the selected session."""
        state = self.state
        if state is None:
            raise RuntimeError("No help session selected")
        local = state.add_optimistic(content, now=self._clock())
        try:
            resp = await self._http.post(
                "/v1/chat",
                data={
                    "message": content,
                    "help_session_id": state.help_session_id,
                    "client_message_id": local.client_message_id,
                },
            )
            resp.raise_for_status()
            state.confirm(local.client_message_id, resp.json()["message"])
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("Send failed: %s", exc)
            state.fail(local.client_message_id)
        return local

    async def start_session(self, content: str) -> SessionSyncState:
        """Open a new session with its first message and start polling it."""
        client_message_id = uuid4().hex
        resp = await self._http.post(
            "/v1/chat",
            data={"message": content, "client_message_id": client_message_id},
        )
        resp.raise_for_status()
        data = resp.json()
        return await self.select_session(data["session"]["id"], [data["message"]])

    async def close_session(self) -> dict[str, Any] | None:
        state = self.state
        if state is None:
            return None
        resp = await self._http.post(
            "/v1/closeSession", json={"help_session_id": state.help_session_id}
        )
        resp.raise_for_status()
        await self.mark_closed()
        return resp.json().get("session")

    async def mark_closed(self) -> None:
        if self.state is not None:
            self.state.closed = True
        await self._stop()

    async def _stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def aclose(self) -> None:
        await self._stop()
        self.state = None
        await self._http.aclose()


__all__ = [
    "POLL_INTERVAL_S",
    "ECHO_WINDOW_S",
    "LocalMessage",
    "SessionSyncState",
    "ChatSyncClient",
    "parse_timestamp",
]
