"""
Events API Router - Server-Sent Events (SSE) endpoint

Streams playback transitions, media position, voice downloads and
lexicon/settings changes to connected clients.

Available Channels:
- playback: Status transitions, position, errors, voice download progress
- lexicon: Lexicon rule events
- settings: Playback settings updates

Usage:
    GET /api/events/subscribe?channels=playback,lexicon

Example Client (JavaScript):
    const eventSource = new EventSource(
        'http://localhost:8765/api/events/subscribe?channels=playback'
    );

    eventSource.onmessage = (event) => {
        const data = JSON.parse(event.data);
        if (data.event === 'playback.status') console.log(data.status);
    };
"""

from typing import Optional
from fastapi import APIRouter, Query
from sse_starlette.sse import EventSourceResponse
from services.event_broadcaster import broadcaster


router = APIRouter(prefix="/api/events", tags=["events"])


def parse_channels(channels: Optional[str]) -> list[str]:
    """Split a comma-separated channel list (default: playback)."""
    if channels:
        channel_list = [c.strip() for c in channels.split(",") if c.strip()]
        if channel_list:
            return channel_list
    return ["playback"]


@router.get("/subscribe")
async def subscribe_to_events(
    channels: Optional[str] = Query(
        None,
        description="Comma-separated list of channels to subscribe to (e.g., 'playback,lexicon')"
    )
):
    """
    Server-Sent Events endpoint for real-time updates.

    **Default:** `playback` channel only.

    **Event Types (playback channel):**
    - `playback.status` - status, activeLocationId, currentIndex, queueLength
    - `playback.position` - position, duration, speed
    - `playback.error` - error message of a failed transition
    - `voice.download_progress` - voiceId, percent, status

    **Event Types (lexicon channel):**
    - `lexicon.rule_created/updated/deleted`

    **Event Types (settings channel):**
    - `settings.updated`

    Events are sent as default messages; the type is in `data.event`.
    A `: keepalive` comment is sent when the stream is idle.
    """
    return EventSourceResponse(
        broadcaster.subscribe(channels=parse_channels(channels)),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            # Disable nginx buffering
            "X-Accel-Buffering": "no",
        },
        media_type="text/event-stream"
    )


@router.get("/stats")
async def get_event_stats():
    """Connected clients and per-channel subscriber counts."""
    return broadcaster.get_stats()
