"""Connection registry and fan-out for realtime clients.

A channel is one live client connection. Deliveries are queued per channel
and written by a single pump task, so a channel observes events in the order
``send``/``broadcast`` were called. Nothing is queued for users that are not
connected.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect

LOGGER = logging.getLogger("jkit.marketplace.realtime")

EVENT_USER_ONLINE = "user_online"
EVENT_USER_OFFLINE = "user_offline"
EVENT_ONLINE_USERS = "online_users"


class Channel(Protocol):
    channel_id: str

    def deliver(self, event: str, payload: Any) -> None: ...


class WebSocketChannel:
    def __init__(self, websocket: WebSocket) -> None:
        self.channel_id = uuid.uuid4().hex
        self.websocket = websocket
        self.outbox: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

    def deliver(self, event: str, payload: Any) -> None:
        self.outbox.put_nowait((event, payload))

    async def pump(self) -> None:
        while True:
            event, payload = await self.outbox.get()
            try:
                await self.websocket.send_json({"event": event, "data": payload})
            except (WebSocketDisconnect, RuntimeError):
                LOGGER.debug("channel %s closed while sending %s", self.channel_id, event)
                return
            finally:
                self.outbox.task_done()


class BroadcastHub:
    def __init__(self) -> None:
        self._channels_by_user: dict[str, Channel] = {}
        self._users_by_channel: dict[str, str] = {}

    @property
    def online_users(self) -> list[str]:
        return list(self._channels_by_user)

    def is_online(self, username: str) -> bool:
        return username in self._channels_by_user

    def username_for(self, channel: Channel) -> str | None:
        return self._users_by_channel.get(channel.channel_id)

    def announce(self, username: str, channel: Channel) -> list[str]:
        previous_user = self._users_by_channel.get(channel.channel_id)
        renamed = previous_user is not None and previous_user != username
        if renamed:
            self._channels_by_user.pop(previous_user, None)

        replaced = self._channels_by_user.get(username)
        if replaced is not None and replaced.channel_id != channel.channel_id:
            self._users_by_channel.pop(replaced.channel_id, None)

        self._channels_by_user[username] = channel
        self._users_by_channel[channel.channel_id] = username
        LOGGER.info(
            "user %s announced on channel %s (online=%d)",
            username,
            channel.channel_id,
            len(self._channels_by_user),
        )

        if renamed:
            self.broadcast(EVENT_USER_OFFLINE, previous_user, exclude=channel.channel_id)
        online = self.online_users
        self._deliver(channel, EVENT_ONLINE_USERS, online)
        self.broadcast(EVENT_USER_ONLINE, username, exclude=channel.channel_id)
        return online

    def withdraw(self, channel: Channel) -> str | None:
        username = self._users_by_channel.pop(channel.channel_id, None)
        if username is None:
            return None
        current = self._channels_by_user.get(username)
        if current is not None and current.channel_id == channel.channel_id:
            del self._channels_by_user[username]
        LOGGER.info("user %s withdrew (online=%d)", username, len(self._channels_by_user))
        self.broadcast(EVENT_USER_OFFLINE, username)
        return username

    def send(self, username: str, event: str, payload: Any) -> bool:
        channel = self._channels_by_user.get(username)
        if channel is None:
            return False
        return self._deliver(channel, event, payload)

    def broadcast(self, event: str, payload: Any, *, exclude: str | None = None) -> int:
        delivered = 0
        for channel in list(self._channels_by_user.values()):
            if channel.channel_id == exclude:
                continue
            if self._deliver(channel, event, payload):
                delivered += 1
        return delivered

    def close(self) -> None:
        self._channels_by_user.clear()
        self._users_by_channel.clear()

    def _deliver(self, channel: Channel, event: str, payload: Any) -> bool:
        try:
            channel.deliver(event, payload)
        except Exception:
            LOGGER.exception("delivery of %s to channel %s failed", event, channel.channel_id)
            return False
        return True
