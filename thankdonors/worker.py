#!/usr/bin/env python3
"""
thankdonors-worker: background jobs outside the web process.

    thankdonors-worker monitor           # run the postcard monitor worker
    thankdonors-worker monitor --once    # one pass over due jobs
    thankdonors-worker monitor-one ID    # watch one postcard in-process
    thankdonors-worker reconcile         # one monthly usage billing sweep
"""
import argparse
import asyncio
import json
import logging
import signal
import sys

from .billing import run_monthly_billing
from .config import Settings
from .infra.timings import aggregates
from .monitor import monitor_postcard
from .services import build_services

logger = logging.getLogger("thankdonors.worker")


async def _monitor(services, once: bool, batch: int, idle: float) -> int:
    worker = services.worker(batch_size=batch, idle_seconds=idle)
    if once:
        handled = await worker.run_once()
        logger.info("Monitor pass handled %d jobs", handled)
        return 0

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # not available on this platform; Ctrl-C still cancels
            pass
    await worker.run_forever(stop)
    return 0


async def _monitor_one(services, postcard_id: str) -> int:
    outcome = await monitor_postcard(
        services.session_factory, services.gated, services.gateway,
        postcard_id, services.policy,
    )
    print(json.dumps({"postcard_id": postcard_id, "outcome": outcome}))
    return 0 if outcome != "exhausted" else 1


async def _reconcile(services) -> int:
    async with services.db() as db:
        result = await run_monthly_billing(db, services.gateway)
    print(json.dumps(result, indent=2))
    return 0 if result["errors"] == 0 else 1


async def _run(args) -> int:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = await build_services(settings)
    try:
        if args.cmd == "monitor":
            return await _monitor(services, args.once, args.batch, args.idle)
        if args.cmd == "monitor-one":
            return await _monitor_one(services, args.postcard_id)
        return await _reconcile(services)
    finally:
        await services.aclose()
        for rec in aggregates():
            logger.info("timing %s n=%d mean=%.1fms", rec["kind"],
                        rec["n"], rec["mean"] * 1000)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(
        prog="thankdonors-worker",
        description="Postcard monitor and usage billing jobs",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    mon = sub.add_parser("monitor", help="run the postcard monitor worker")
    mon.add_argument("--once", action="store_true",
                     help="handle due jobs once and exit")
    mon.add_argument("--batch", type=int, default=50,
                     help="jobs claimed per pass (default: 50)")
    mon.add_argument("--idle", type=float, default=1.0,
                     help="seconds to sleep when the queue is idle")

    one = sub.add_parser("monitor-one",
                         help="watch a single postcard until billed")
    one.add_argument("postcard_id")

    sub.add_parser("reconcile", help="run one monthly usage billing sweep")

    args = ap.parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
