"""Watch the activity read API from a terminal with adaptive polling.

Pressing Enter counts as an interaction and wakes a suspended watcher::

    python -m scripts.watch_activity --base-url http://localhost:8000 --tier realtime
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime
from typing import Any, Dict

import httpx

from activity_sync.services.polling import TIERS, AdaptivePoller, get_tier


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


def _describe(payload: Dict[str, Any]) -> str:
    if payload.get("isPlaying") and payload.get("track"):
        track = payload["track"]
        return f"now playing {track.get('name')} by {track.get('artist')}"
    if "isPlaying" in payload:
        return payload.get("message") or "nothing playing"
    if "activities" in payload:
        latest = payload["activities"][:1]
        head = f" | latest {latest[0]['shortHash']} {latest[0]['repository']}" if latest else ""
        return f"{len(payload['activities'])} commits, synced {payload.get('lastSyncedAt')}{head}"
    if "tracks" in payload:
        return f"{len(payload['tracks'])} recent tracks"
    return ", ".join(sorted(payload))


async def watch(base_url: str, path: str, tier_name: str) -> None:
    tier = get_tier(tier_name)

    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:

        async def fetch() -> None:
            response = await client.get(path)
            if response.status_code != 200:
                print(f"[{_timestamp()}] {response.status_code} {response.text}")
                return
            payload = response.json()
            suffix = f" ({payload['error']})" if payload.get("error") else ""
            print(f"[{_timestamp()}] {_describe(payload)}{suffix}")

        poller = AdaptivePoller(fetch, tier)
        poller.start()
        print(
            f"Watching {base_url}{path} on tier '{tier.name}' "
            "(Enter = interaction, Ctrl+C to exit)"
        )

        loop = asyncio.get_running_loop()
        try:
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    await asyncio.Event().wait()
                decision = poller.record_interaction()
                print(
                    f"[{_timestamp()}] interaction: state={decision.state.value}"
                    f" interval={decision.interval}"
                )
        finally:
            await poller.stop()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Poll the activity API adaptively.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--path", default="/api/activity/spotify/current")
    parser.add_argument("--tier", choices=sorted(TIERS), default="realtime")
    return parser


if __name__ == "__main__":  # pragma: no cover - manual execution path
    args = _build_parser().parse_args()
    try:
        asyncio.run(watch(args.base_url, args.path, args.tier))
    except KeyboardInterrupt:
        print("\nStopped watching.")
