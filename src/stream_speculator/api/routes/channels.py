"""Channel tracking routes.

``POST /api/channels/{channel_id}/track``
    Start tracking a broadcaster: stores the channel and schedules its
    EventSub registration (and, if live, its monitoring and prediction).
``GET /api/channels/{channel_id}``
    Return the stored channel document.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from stream_speculator.api.dependencies import get_context
from stream_speculator.context import AppContext
from stream_speculator.handlers.streams import track_channel

router = APIRouter(tags=["channels"])


@router.post("/{channel_id}/track", status_code=201)
async def track(channel_id: str, ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
    try:
        channel = await track_channel(ctx, channel_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return channel.to_wire()


@router.get("/{channel_id}")
async def get_channel(channel_id: str, ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
    channel = await ctx.store.get_channel(channel_id)
    if channel is None:
        raise HTTPException(status_code=404, detail=f"channel {channel_id} is not tracked")
    return channel.to_wire()
