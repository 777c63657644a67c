"""Run every scanner once and write the notification payload.

Usage examples
--------------
python notification_runner.py --data public/organized_nepse_data.json
python notification_runner.py --data data.json --allow-list public/stocks.xlsx
python notification_runner.py --data https://example.org/nepse.json --parallel --timeout 120
python notification_runner.py --data data.json --only trendline rsi_support

Each scanner is isolated: a failure or timeout in one is logged and recorded
in the payload's ``errors`` block while the others still run.  The payload is
written as JSON for the mailer to pick up.
"""
from __future__ import annotations

import argparse
import json
import logging
import threading
import time
from concurrent.futures import Future, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from alert_config import AlertCriteria, load_criteria, resolve_data_dir, resolve_state_path
from alert_state import StateStore
from detection import (
    DetectionError,
    DetectionOutcome,
    DetectionResult,
    NoQualifyingSymbols,
    ScanContext,
    isoformat,
    to_jsonable,
)
from institutional_activity_scanner import scan_institutional_activity
from market_data import AllowList, load_market_data
from rsi_support_scanner import scan_rsi_support
from trendline_scanner import scan_trendlines
from weekly_heatmap import scan_weekly_heatmap

logger = logging.getLogger(__name__)

Scanner = Callable[[Mapping[str, pd.DataFrame], ScanContext], DetectionResult]

DETECTORS: Dict[str, Scanner] = {
    "institutional_activity": scan_institutional_activity,
    "trendline": scan_trendlines,
    "weekly_heatmap": scan_weekly_heatmap,
    "rsi_support": scan_rsi_support,
}

__all__ = [
    "DETECTORS",
    "build_payload",
    "has_notifications",
    "run",
    "run_detectors",
    "run_single_detector",
    "write_payload",
]


def run_single_detector(
    name: str,
    scanner: Scanner,
    data: Mapping[str, pd.DataFrame],
    context: ScanContext,
) -> DetectionOutcome:
    """Run one scanner, converting every failure into an outcome."""

    logger.info("Processing %s notifications...", name)
    try:
        result = scanner(data, context)
    except NoQualifyingSymbols as exc:
        logger.info("%s: %s", name, exc)
        return DetectionOutcome(name=name, reason=str(exc))
    except DetectionError as exc:
        logger.error("Error processing %s: %s", name, exc)
        return DetectionOutcome(name=name, error=exc, reason=str(exc))
    except Exception as exc:
        logger.exception("Unexpected error processing %s", name)
        return DetectionOutcome(name=name, error=exc, reason=str(exc))
    return DetectionOutcome(name=name, result=result)


def _start_detector(
    name: str,
    scanner: Scanner,
    data: Mapping[str, pd.DataFrame],
    context: ScanContext,
) -> "Future[DetectionOutcome]":
    """Run one scanner on a daemon thread so a hung scan cannot block exit."""

    future: "Future[DetectionOutcome]" = Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(run_single_detector(name, scanner, data, context))
        except BaseException as exc:
            future.set_exception(exc)
            raise

    threading.Thread(target=_target, name=f"detector-{name}", daemon=True).start()
    return future


def run_detectors(
    data: Mapping[str, pd.DataFrame],
    context: ScanContext,
    names: Optional[Sequence[str]] = None,
    *,
    parallel: bool = False,
    timeout: Optional[float] = None,
    detectors: Optional[Mapping[str, Scanner]] = None,
) -> Dict[str, DetectionOutcome]:
    """Run the selected scanners and return their outcomes by name."""

    registry = dict(detectors or DETECTORS)
    selected = list(names) if names else list(registry)
    unknown = [name for name in selected if name not in registry]
    if unknown:
        raise ValueError(f"Unknown detectors: {unknown}")

    outcomes: Dict[str, DetectionOutcome] = {}
    if not parallel:
        if timeout is not None:
            logger.warning(
                "Ignoring timeout=%s: detectors only time out when run in parallel", timeout
            )
        for name in selected:
            outcomes[name] = run_single_detector(name, registry[name], data, context)
        return outcomes

    futures = {
        name: _start_detector(name, registry[name], data, context) for name in selected
    }
    started = time.monotonic()
    # One deadline for the whole batch; stragglers are left on daemon threads.
    done, _ = wait(list(futures.values()), timeout=timeout)
    for name, future in futures.items():
        if future in done:
            outcomes[name] = future.result()
            continue
        reason = f"timed out after {timeout} seconds"
        logger.error("%s did not finish within %s seconds; skipping", name, timeout)
        outcomes[name] = DetectionOutcome(name=name, error=TimeoutError(reason), reason=reason)
    logger.debug("Parallel detectors settled in %.2fs", time.monotonic() - started)
    return outcomes


def build_payload(
    outcomes: Mapping[str, DetectionOutcome],
    criteria: AlertCriteria,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    payload: Dict[str, Any] = {"timestamp": isoformat(now), "errors": {}}
    for name, outcome in outcomes.items():
        payload[name] = outcome.result.to_dict() if outcome.result is not None else None
        if outcome.error is not None:
            payload["errors"][name] = outcome.reason or type(outcome.error).__name__
    rsi_block = payload.get("rsi_support")
    if rsi_block is not None:
        rsi_block["max_rsi"] = criteria.rsi_support.max_rsi
    return payload


def has_notifications(payload: Mapping[str, Any]) -> bool:
    return any(payload.get(name) for name in DETECTORS)


def write_payload(payload: Mapping[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(to_jsonable(payload), handle, indent=2)
    return path


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the NEPSE signal scanners once")
    parser.add_argument(
        "--data",
        required=True,
        help="Path or URL of the daily OHLCV export (JSON array or CSV)",
    )
    parser.add_argument(
        "--allow-list",
        type=Path,
        default=None,
        help="Workbook/CSV/text file listing tracked symbols (default: all symbols)",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON criteria file")
    parser.add_argument(
        "--state-file",
        type=Path,
        default=None,
        help="Tracked state location (default: $NEPSE_ALERTS_STATE_FILE or ~/.nepse_alerts)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Where to write the payload (default: <data dir>/latest_notifications.json)",
    )
    parser.add_argument(
        "--only",
        nargs="+",
        choices=sorted(DETECTORS),
        default=None,
        help="Run only the named scanners",
    )
    parser.add_argument("--parallel", action="store_true", help="Run scanners concurrently")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Time limit in seconds for the whole parallel batch (requires --parallel)",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)
    if args.timeout is not None:
        if not args.parallel:
            parser.error("--timeout only applies together with --parallel")
        if args.timeout <= 0:
            parser.error("--timeout must be a positive number of seconds")
    return args


def run(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        criteria = load_criteria(args.config)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    allow_list = AllowList.from_file(args.allow_list) if args.allow_list else None
    try:
        data = load_market_data(args.data, allow_list)
    except DetectionError as exc:
        logger.error("Market data unavailable: %s", exc)
        return 1

    store = StateStore(args.state_file or resolve_state_path())
    store.load()
    context = ScanContext(criteria=criteria, state=store)

    logger.info("Starting notification process for %d symbols", len(data))
    outcomes = run_detectors(
        data, context, args.only, parallel=args.parallel, timeout=args.timeout
    )
    payload = build_payload(outcomes, criteria, context.now)

    if not has_notifications(payload):
        logger.info("No notifications to send.")

    output = args.output or resolve_data_dir() / "latest_notifications.json"
    write_payload(payload, output)
    logger.info("Notification payload written to %s", output)
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
