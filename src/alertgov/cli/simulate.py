"""Replay scripted signals through the suppression engine and tuning loop."""

from __future__ import annotations

import argparse
import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List

from alertgov.config import load_config
from alertgov.persistence.gateway import InMemoryGateway
from alertgov.service import GovernanceService
from alertgov.suppression.signals import QueueSignalSource


class SimClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def read_signal_script(path: Path) -> Dict[str, List[Dict[str, Any]]]:
    """JSONL, one object per line with a ``group`` key plus signal fields."""
    script: Dict[str, List[Dict[str, Any]]] = {}
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            row = json.loads(line)
            group = row.pop("group", None)
            if not group:
                raise ValueError(f"{path}:{lineno}: missing 'group'")
            script.setdefault(str(group), []).append(row)
    return script


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Simulate alert governance over scripted signals")
    p.add_argument("signals", type=Path, help="JSONL signal script")
    p.add_argument("--config", type=Path, help="Governance config (default: configs/governance.yaml)")
    p.add_argument("--cycles", type=int, help="Cycles to run (default: longest group script)")
    p.add_argument("--step-seconds", type=float, default=60.0, help="Simulated time per cycle")
    p.add_argument("--tune-every", type=int, default=1, help="Run a tuning cycle every N cycles (0 disables)")
    p.add_argument("--format", choices=["json", "text"], default="text", help="Output format")
    p.add_argument("-v", "--verbose", action="store_true")
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    script = read_signal_script(args.signals)
    if not script:
        print("No signals in script")
        return 1
    source = QueueSignalSource()
    for group, rows in script.items():
        source.extend(group, rows)

    clock = SimClock(datetime(2024, 1, 1, tzinfo=UTC))
    config = load_config(args.config)
    service = GovernanceService(
        config, source, gateway=InMemoryGateway(), clock=clock, synchronous_persistence=True
    )
    cycles = args.cycles or max(len(rows) for rows in script.values())
    groups = sorted(script)
    report: List[Dict[str, Any]] = []
    try:
        for cycle in range(1, cycles + 1):
            batch = service.evaluate_suppression_window(groups)
            row: Dict[str, Any] = {
                "cycle": cycle,
                "at": clock.now.isoformat(),
                "groups": {r.dedup_group: r.as_dict() for r in batch.results},
            }
            if args.tune_every and cycle % args.tune_every == 0:
                row["tuning"] = service.run_tuning_cycle().as_dict()
            report.append(row)
            clock.advance(args.step_seconds)
    finally:
        service.close()

    if args.format == "json":
        print(json.dumps({"cycles": report, "final": service.get_suppression_metrics()}, indent=2))
        return 0

    for row in report:
        states = ", ".join(
            f"{g}={r['state']}({r['noise_score']})" for g, r in row["groups"].items()
        )
        tuning = row.get("tuning")
        suffix = f" | tuning={tuning['reason']}" if tuning else ""
        print(f"[{row['cycle']:>3}] {states}{suffix}")
    metrics = service.get_suppression_metrics()
    print(f"\nStates: {metrics['states']}")
    print(f"Weights: {json.dumps(service.weights.as_dict())}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
