"""Long-running loops for a started bridge.

Three loops share one task group:
- Telegram `getUpdates` long polling, with exponential backoff on errors;
- the Source event feed (its end stops the bridge);
- periodic contact directory sync.

The bridge is always closed on exit, including cancellation.
"""

from __future__ import annotations

from typing import Any

import anyio
from rich import print

from .engine.bridge import Bridge
from .sink.api import TelegramBotApiError

_MAX_BACKOFF_SECONDS = 30.0


def extract_update_id(update: dict[str, Any]) -> int | None:
    update_id = update.get("update_id")
    return update_id if isinstance(update_id, int) else None


def next_offset_for(updates: list[dict[str, Any]], current: int | None) -> int | None:
    """Return the `getUpdates` offset acknowledging every update in `updates`."""

    latest = None if current is None else current - 1
    for update in updates:
        update_id = extract_update_id(update)
        if update_id is None:
            continue
        if latest is None or update_id > latest:
            latest = update_id
    return latest + 1 if latest is not None else current


async def _dispatch_sink_batch(bridge: Bridge, updates: list[dict[str, Any]]) -> None:
    # Updates of one batch stay in order.
    for update in updates:
        await bridge.handle_sink_update(update)


async def poll_sink_forever(bridge: Bridge, *, timeout_seconds: int) -> None:
    if timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be > 0; got {timeout_seconds}")

    next_offset: int | None = None
    backoff_seconds = 1.0
    async with anyio.create_task_group() as tg:
        while True:
            try:
                updates = await bridge.sink.get_updates(
                    offset=next_offset,
                    timeout_seconds=timeout_seconds,
                )
            except TelegramBotApiError as e:
                print(f"[red]Telegram poll error[/red]: {e}")
                await anyio.sleep(backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
                continue

            backoff_seconds = 1.0
            if not updates:
                continue
            next_offset = next_offset_for(updates, next_offset)
            print(
                "[cyan]telegram recv[/cyan] "
                + f"updates={len(updates)} next_offset={next_offset}"
            )
            tg.start_soon(_dispatch_sink_batch, bridge, updates)


async def consume_source_events(bridge: Bridge) -> None:
    async for event in bridge.source.events():
        await bridge.handle_source_event(event)
    print("[yellow]WhatsApp event feed ended[/yellow]")


async def sync_contacts_forever(bridge: Bridge, *, interval_seconds: float) -> None:
    while True:
        changed = await bridge.sync_contacts()
        if changed:
            print(f"[cyan]contacts synced[/cyan] changed={changed}")
        await anyio.sleep(interval_seconds)


async def run_bridge(bridge: Bridge) -> None:
    """Run all bridge loops until the Source feed ends or the task is cancelled."""

    config = bridge.config
    print(
        "\n".join(
            [
                "WhatsApp bridge running (polling getUpdates).",
                f"- chat_id: {bridge.chat_id}",
                f"- timeout_seconds: {config.poll_timeout_seconds}",
                f"- database_path: {config.database_path}",
                f"- temp_dir: {config.temp_dir}",
                f"- mapped_chats: {len(bridge.store.chat_mappings())}",
                f"- contact_sync_interval_seconds: {config.contact_sync_interval_seconds}",
            ]
        )
    )

    try:
        async with anyio.create_task_group() as tg:

            async def _source_then_stop() -> None:
                await consume_source_events(bridge)
                tg.cancel_scope.cancel()

            tg.start_soon(_source_then_stop)
            tg.start_soon(
                lambda: poll_sink_forever(bridge, timeout_seconds=config.poll_timeout_seconds)
            )
            tg.start_soon(
                lambda: sync_contacts_forever(
                    bridge, interval_seconds=config.contact_sync_interval_seconds
                )
            )
    finally:
        with anyio.CancelScope(shield=True):
            await bridge.aclose()
        print("[yellow]WhatsApp bridge stopped[/yellow]")
