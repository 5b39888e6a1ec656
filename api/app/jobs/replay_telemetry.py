"""Replay a recorded telemetry file through the status tracker.

Usage:

  python -m api.app.jobs.replay_telemetry device_sample_data.json
  python -m api.app.jobs.replay_telemetry data.json --clock replay
  python -m api.app.jobs.replay_telemetry data.json --api-url http://localhost:8080

The file holds a JSON array of telemetry messages. Messages are processed in
batches with an offline sweep every `--sweep-every` messages, followed by a
final sweep and one fallback retry drain. The metrics summary is logged at the end.

Clock modes:
- wall:   sweeps compare against the real wall clock (recorded data older than
          the offline threshold goes OFFLINE on the first sweep).
- replay: the tracker clock follows the newest message timestamp seen so far,
          and delayed fallback retries run deterministically at the end.

With --api-url, messages are POSTed to a running service instead; sweeps and
retry drains are then triggered through the admin routes.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import requests
from dotenv import find_dotenv, load_dotenv

from ..config import Settings, load_settings
from ..observability import configure_logging
from ..services.metrics import summary_lines
from ..services.scheduling import ManualClock, ManualTaskScheduler
from ..services.status_tracker import StatusTracker, TrackerPolicy
from ..services.validation import parse_timestamp


logger = logging.getLogger("fleetstatus.job.replay_telemetry")


@dataclass(frozen=True)
class ReplayOptions:
    batch_size: int = 100
    sweep_every: int = 1000
    batch_delay_s: float = 0.0
    clock_mode: str = "wall"


def load_messages(path: Path) -> List[Dict[str, Any]]:
    data = json.loads(path.read_text("utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of telemetry messages")
    return [m for m in data if isinstance(m, dict)]


def _message_time(message: Dict[str, Any]):
    ts = message.get("timestamp")
    if not isinstance(ts, str):
        return None
    try:
        return parse_timestamp(ts)
    except ValueError:
        return None


def build_tracker(
    clock_mode: str, settings: Settings
) -> tuple[StatusTracker, ManualClock | None, ManualTaskScheduler | None]:
    policy = TrackerPolicy.from_settings(settings)
    if clock_mode == "replay":
        clock = ManualClock()
        scheduler = ManualTaskScheduler(clock)
        return StatusTracker(policy=policy, clock=clock, scheduler=scheduler), clock, scheduler
    return StatusTracker(policy=policy), None, None


def replay_into_tracker(
    messages: List[Dict[str, Any]],
    options: ReplayOptions,
    settings: Settings | None = None,
) -> Dict[str, Any]:
    tracker, clock, scheduler = build_tracker(options.clock_mode, settings or load_settings())
    if clock is not None:
        first = next((t for t in map(_message_time, messages) if t is not None), None)
        if first is not None:
            clock.set(first)
            tracker.reset_metrics()

    processed = 0
    for start in range(0, len(messages), options.batch_size):
        batch = messages[start : start + options.batch_size]
        for message in batch:
            if clock is not None:
                ts = _message_time(message)
                if ts is not None and ts > clock.now():
                    clock.set(ts)
                    scheduler.run_due()
            tracker.process_message(message)
            processed += 1
            if processed % options.sweep_every == 0:
                tracker.check_offline_devices()

        if start % 5000 == 0:
            logger.info("Processed %s/%s messages", processed, len(messages))

        if options.batch_delay_s > 0 and start + options.batch_size < len(messages):
            time.sleep(options.batch_delay_s)

    tracker.check_offline_devices()
    drain = tracker.process_fallback_retries()
    logger.info(
        "Fallback retry drain complete (dequeued=%s, scheduled=%s, exhausted=%s)",
        drain.dequeued,
        drain.scheduled,
        drain.exhausted,
    )

    if scheduler is not None:
        scheduler.run_all()
    else:
        dropped = tracker.shutdown()
        if dropped:
            logger.info("Job exiting; %s scheduled fallback retries were not run", dropped)

    return tracker.get_metrics()


def replay_over_http(
    messages: List[Dict[str, Any]],
    options: ReplayOptions,
    *,
    api_url: str,
    admin_key: str | None,
    timeout_s: float = 10.0,
) -> Dict[str, Any]:
    base = api_url.rstrip("/")
    admin_headers = {"X-Admin-Key": admin_key} if admin_key else {}

    sent = 0
    with requests.Session() as http:
        for start in range(0, len(messages), options.batch_size):
            for message in messages[start : start + options.batch_size]:
                resp = http.post(f"{base}/api/v1/telemetry", json=message, timeout=timeout_s)
                resp.raise_for_status()
                sent += 1
                if sent % options.sweep_every == 0:
                    http.post(
                        f"{base}/api/v1/admin/sweep", headers=admin_headers, timeout=timeout_s
                    ).raise_for_status()

            if options.batch_delay_s > 0 and start + options.batch_size < len(messages):
                time.sleep(options.batch_delay_s)

        http.post(f"{base}/api/v1/admin/sweep", headers=admin_headers, timeout=timeout_s).raise_for_status()
        http.post(
            f"{base}/api/v1/admin/fallback-retries", headers=admin_headers, timeout=timeout_s
        ).raise_for_status()

        resp = http.get(f"{base}/api/v1/metrics", timeout=timeout_s)
        resp.raise_for_status()
        return resp.json()


def main(argv: List[str] | None = None) -> None:
    # Settings are read after .env so its values reach the tracker policy.
    load_dotenv(find_dotenv(usecwd=True))
    settings = load_settings()

    parser = argparse.ArgumentParser(description="Replay recorded telemetry through the status tracker")
    parser.add_argument("path", help="JSON file holding an array of telemetry messages")
    parser.add_argument("--batch-size", type=int, default=100, help="Messages per batch")
    parser.add_argument("--sweep-every", type=int, default=1000, help="Run the offline sweep every N messages")
    parser.add_argument("--batch-delay-ms", type=int, default=0, help="Pause between batches")
    parser.add_argument("--clock", choices=["wall", "replay"], default="wall", help="Tracker clock mode")
    parser.add_argument("--api-url", default=os.getenv("FLEETSTATUS_API_URL"), help="Replay against a running API")
    parser.add_argument("--admin-key", default=os.getenv("ADMIN_API_KEY"), help="X-Admin-Key for --api-url")
    args = parser.parse_args(argv)

    if args.batch_size < 1:
        raise SystemExit("--batch-size must be >= 1")
    if args.sweep_every < 1:
        raise SystemExit("--sweep-every must be >= 1")

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    path = Path(args.path)
    if not path.exists():
        raise SystemExit(f"{path} not found")

    messages = load_messages(path)
    logger.info("Loaded %s telemetry records from %s", len(messages), path)

    options = ReplayOptions(
        batch_size=args.batch_size,
        sweep_every=args.sweep_every,
        batch_delay_s=max(0, args.batch_delay_ms) / 1000.0,
        clock_mode=args.clock,
    )

    start = time.perf_counter()
    if args.api_url:
        snapshot = replay_over_http(messages, options, api_url=args.api_url, admin_key=args.admin_key)
    else:
        snapshot = replay_into_tracker(messages, options, settings)
    elapsed = time.perf_counter() - start

    logger.info("Replay complete in %.2fs", elapsed)
    for line in summary_lines(snapshot):
        logger.info(line)


if __name__ == "__main__":
    main()
