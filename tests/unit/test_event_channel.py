from __future__ import annotations

import asyncio

import pytest

from autoembed.core.channels import EventChannel


def test_full_channel_drops_oldest_event() -> None:
    channel: EventChannel[int] = EventChannel(maxsize=2)
    for value in range(4):
        channel.publish(value)

    assert channel.drain() == [2, 3]
    assert channel.dropped == 2


def test_channel_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        EventChannel(maxsize=0)


@pytest.mark.asyncio
async def test_async_iteration_yields_events_in_order() -> None:
    channel: EventChannel[str] = EventChannel(maxsize=10)
    channel.publish("first")
    channel.publish("second")

    seen: list[str] = []

    async def _consume() -> None:
        async for event in channel:
            seen.append(event)
            if len(seen) == 2:
                return

    await asyncio.wait_for(_consume(), timeout=1)

    assert seen == ["first", "second"]
