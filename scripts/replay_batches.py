#!/usr/bin/env python3
"""Replay recorded detection cycles through the presence engine.

Input is a JSON file::

    {
      "agents":  [{"customId": "10.1.10.34", "location": "entry way", "range": 2.0}, ...],
      "beacons": [{"uuid": "b9407f30...", "major": 19602, "minor": 10956, "name": "badge 7"}, ...],
      "cycles":  [[{"agentId": "10.1.10.34", "uuid": "b9407f30...", "major": 19602,
                    "minor": 10956, "distance": 1.4, "time": 1412610581244}, ...], ...]
    }

Each element of ``cycles`` is one reporting cycle.  Directories are held
in memory, nothing is written back anywhere.  After every cycle the
events are printed, followed by the arbitrated beacons per location.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from beaconpresence import (  # noqa: E402
    Agent,
    Beacon,
    InMemoryAgentDirectory,
    InMemoryBeaconDirectory,
    PresenceConfig,
    PresenceEngine,
)
from beaconpresence.engine import detections_from_report  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("recording", type=Path, help="JSON file with agents, beacons and cycles")
    parser.add_argument("--no-arbiter", action="store_true", help="Only print events, skip the location view")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging")
    return parser.parse_args(argv)


def _load(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise SystemExit(f"{path}: top level must be an object")
    return data


async def _replay(recording: dict[str, Any], *, show_arbiter: bool) -> int:
    agents = [Agent.model_validate(item) for item in recording.get("agents", [])]
    beacons = [Beacon.model_validate(item) for item in recording.get("beacons", [])]
    config = PresenceConfig(agent_cache_ttl=0, heartbeat_enabled=False)

    async with PresenceEngine(
        config,
        agents=InMemoryAgentDirectory(agents),
        beacons=InMemoryBeaconDirectory(beacons),
    ) as engine:
        for index, cycle in enumerate(recording.get("cycles", []), start=1):
            report = await engine.ingest_batch(detections_from_report({"detections": cycle}))
            print(f"--- cycle {index}: {len(report.events)} event(s)")
            for event in report.events:
                proximity = "" if event.proximity is None else f" proximity={event.proximity:.2f}"
                print(f"  {event.event_type.value:<5} agent={event.agent_id} beacon={event.beacon_key}{proximity}")
            for agent_id in report.failed_agents:
                print(f"  FAILED agent={agent_id}")

            if not show_arbiter:
                continue
            for agent in agents:
                if agent.location is None:
                    continue
                near = await engine.beacons_near_location(agent.location)
                names = ", ".join(beacon.name or str(beacon.unique_key) for beacon in near) or "-"
                print(f"  near {agent.location!r}: {names}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_replay(_load(args.recording), show_arbiter=not args.no_arbiter))


if __name__ == "__main__":
    raise SystemExit(main())
