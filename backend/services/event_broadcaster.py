"""
Event Broadcaster Service for Server-Sent Events (SSE)

Manages real-time event broadcasting to all connected SSE clients.
Provides singleton instance for application-wide event emission.

Clients subscribe to channels; events are JSON-encoded once and queued per
client. Playback status, position, error and voice download events have
module-level emit helpers.

Usage:
    from services.event_broadcaster import emit_status_update

    await emit_status_update(status_update, book_id="book-1")
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, AsyncGenerator, Any, Optional
from datetime import datetime, timezone
from loguru import logger

from config import SSE_CLIENT_QUEUE_SIZE, SSE_KEEPALIVE_TIMEOUT
from models.playback_models import StatusUpdate


class EventType:
    """Event type constants for SSE broadcasting"""

    # Playback events
    PLAYBACK_STATUS = "playback.status"
    PLAYBACK_POSITION = "playback.position"
    PLAYBACK_ERROR = "playback.error"

    # Voice events
    VOICE_DOWNLOAD_PROGRESS = "voice.download_progress"

    # Lexicon events
    LEXICON_RULE_CREATED = "lexicon.rule_created"
    LEXICON_RULE_UPDATED = "lexicon.rule_updated"
    LEXICON_RULE_DELETED = "lexicon.rule_deleted"

    # Settings events
    SETTINGS_UPDATED = "settings.updated"


@dataclass
class SSEClient:
    """One connected SSE stream."""
    client_id: str
    channels: FrozenSet[str]
    queue: asyncio.Queue
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delivered: int = 0


class EventBroadcaster:
    """
    Fans events out to connected SSE clients by channel.

    Channels:
    - "playback" - Status transitions, position, errors, voice downloads
    - "lexicon" - Lexicon rule changes
    - "settings" - Playback settings changes

    Each client owns a bounded queue. A client that stops draining it is
    disconnected instead of holding back the producer.
    """

    def __init__(self, queue_size: int = SSE_CLIENT_QUEUE_SIZE):
        self.queue_size = queue_size
        self.clients: Dict[str, SSEClient] = {}
        self._total_clients = 0
        self._total_events = 0
        logger.info("[EventBroadcaster] Initialized")

    def _subscribers(self, channel: str) -> List[SSEClient]:
        return [client for client in self.clients.values() if channel in client.channels]

    async def subscribe(
        self,
        channels: Optional[List[str]] = None,
        keepalive_timeout: float = SSE_KEEPALIVE_TIMEOUT
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """
        Register a client and stream its events.

        The first item is a 'connected' event; afterwards a keepalive comment
        is yielded whenever keepalive_timeout passes without an event. The
        client is removed when the generator is closed or cancelled.
        """
        client = SSEClient(
            client_id=str(uuid.uuid4()),
            channels=frozenset(channels or ["playback"]),
            queue=asyncio.Queue(maxsize=self.queue_size)
        )
        self.clients[client.client_id] = client
        self._total_clients += 1
        short_id = client.client_id[:8]
        logger.info(f"[EventBroadcaster] Client {short_id} subscribed to {sorted(client.channels)}")

        try:
            yield {
                "event": "connected",
                "data": json.dumps({
                    "clientId": client.client_id,
                    "channels": sorted(client.channels),
                    "timestamp": client.connected_at.isoformat()
                }),
                "id": str(uuid.uuid4())
            }

            while True:
                try:
                    event = await asyncio.wait_for(client.queue.get(), timeout=keepalive_timeout)
                except asyncio.TimeoutError:
                    yield {"comment": "keepalive"}
                    continue
                client.delivered += 1
                self._total_events += 1
                yield event

        except asyncio.CancelledError:
            logger.debug(f"[EventBroadcaster] Client {short_id} cancelled")
            raise

        finally:
            self._remove(client.client_id)

    def _remove(self, client_id: str) -> None:
        client = self.clients.pop(client_id, None)
        if client is not None:
            logger.info(
                f"[EventBroadcaster] Client {client_id[:8]} unsubscribed after "
                f"{client.delivered} events (active: {len(self.clients)})"
            )

    async def broadcast_event(
        self,
        event_type: str,
        data: Dict[str, Any],
        channel: str = "playback",
        event_id: Optional[str] = None
    ) -> int:
        """
        Queue an event for every subscriber of a channel.

        Events go out as default SSE messages (no "event:" field) so that
        EventSource.onmessage receives them; the type travels in data.event.

        Returns:
            Number of clients the event was queued for
        """
        subscribers = self._subscribers(channel)
        if not subscribers:
            return 0

        payload = {
            "event": event_type,
            **data,
            "_timestamp": datetime.now(timezone.utc).isoformat(),
            "_channel": channel
        }
        try:
            encoded = json.dumps(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"[EventBroadcaster] {event_type} payload not JSON-serializable: {e}")
            return 0

        event = {"data": encoded, "id": event_id or str(uuid.uuid4())}
        queued = 0
        for client in subscribers:
            try:
                client.queue.put_nowait(event)
                queued += 1
            except asyncio.QueueFull:
                logger.warning(
                    f"[EventBroadcaster] Client {client.client_id[:8]} is not draining "
                    f"its queue, disconnecting"
                )
                self._remove(client.client_id)

        logger.trace(f"[EventBroadcaster] {event_type} -> {queued} client(s) on '{channel}'")
        return queued

    async def broadcast_playback_update(
        self,
        playback_data: Dict[str, Any],
        event_type: str = EventType.PLAYBACK_STATUS
    ) -> int:
        return await self.broadcast_event(event_type, playback_data, channel="playback")

    async def broadcast_lexicon_update(self, rule_data: Dict[str, Any], event_type: str) -> int:
        return await self.broadcast_event(event_type, rule_data, channel="lexicon")

    async def broadcast_settings_update(self, settings_data: Dict[str, Any]) -> int:
        return await self.broadcast_event(EventType.SETTINGS_UPDATED, settings_data, channel="settings")

    def get_stats(self) -> Dict[str, Any]:
        channels: Dict[str, int] = {}
        for client in self.clients.values():
            for channel in client.channels:
                channels[channel] = channels.get(channel, 0) + 1
        return {
            "activeClients": len(self.clients),
            "totalClients": self._total_clients,
            "totalEvents": self._total_events,
            "channels": channels
        }

    def __repr__(self) -> str:
        return f"<EventBroadcaster clients={len(self.clients)}>"


# Global singleton instance
broadcaster = EventBroadcaster()


async def emit_status_update(update: StatusUpdate, book_id: Optional[str] = None):
    """
    Emit a playback status transition.

    The queue is reduced to its length; clients fetch it via GET /api/playback/state.
    """
    data = {
        "bookId": book_id,
        "status": update.status,
        "activeLocationId": update.active_location_id,
        "currentIndex": update.current_index,
        "queueLength": len(update.queue),
    }
    if update.error:
        data["error"] = update.error

    await broadcaster.broadcast_playback_update(data, event_type=EventType.PLAYBACK_STATUS)

    if update.error:
        await broadcaster.broadcast_playback_update(
            {"bookId": book_id, "error": update.error},
            event_type=EventType.PLAYBACK_ERROR
        )

    if update.download_progress is not None:
        await emit_download_progress(
            update.download_progress.voice_id,
            update.download_progress.percent,
            update.download_progress.status
        )


async def emit_position_update(
    book_id: Optional[str],
    position: float,
    duration: float,
    speed: float
):
    """Emit media position (seconds on the section timeline)."""
    await broadcaster.broadcast_playback_update(
        {
            "bookId": book_id,
            "position": position,
            "duration": duration,
            "speed": speed
        },
        event_type=EventType.PLAYBACK_POSITION
    )


async def emit_download_progress(voice_id: str, percent: float, status: str = ""):
    """Emit voice download progress."""
    await broadcaster.broadcast_playback_update(
        {
            "voiceId": voice_id,
            "percent": percent,
            "status": status
        },
        event_type=EventType.VOICE_DOWNLOAD_PROGRESS
    )
