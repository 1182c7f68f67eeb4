"""
Background sweep worker.

Periodically advances disputes past their response deadline and escalates
refund reviews past their SLA.
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from payout_core.config import get_settings
from payout_core.container import Container, build_container
from payout_core.domain.models import utc_now
from payout_core.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(container: Container) -> Dict[str, Any]:
    """
    Run one dispute deadline and refund SLA sweep.

    Returns:
        Dict[str, Any]: Ids of the disputes and refunds touched
    """
    now = utc_now()
    logger.info("sweep_started", now=now.isoformat())

    disputes = await container.disputes.advance_overdue(now)
    refunds = await container.refunds.escalate_overdue(now)

    result = {
        "disputes_advanced": [d.id for d in disputes],
        "refunds_escalated": [r.id for r in refunds],
    }
    logger.info(
        "sweep_completed",
        disputes_advanced=len(disputes),
        refunds_escalated=len(refunds),
    )
    return result


async def start_sweep_worker(
    interval_seconds: Optional[int] = None,
    once: bool = False,
    container: Optional[Container] = None,
) -> None:
    """
    Start the sweep worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings)
        once: Run a single sweep and exit
        container: Prebuilt services (built from settings when omitted)
    """
    settings = get_settings()
    setup_logging(settings)
    interval = interval_seconds or settings.reconciliation_interval
    container = container or build_container(settings)
    await container.start()

    logger.info("sweep_worker_starting", interval_seconds=interval)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        while not stop_event.is_set():
            try:
                await run_sweep(container)
            except Exception as e:
                # The next sweep picks up the same work
                logger.error("sweep_execution_error", error=str(e), error_type=type(e).__name__)

            if once:
                break

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
    finally:
        await container.close()
        logger.info("sweep_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Dispute deadline and refund SLA sweep worker")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between sweeps")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_sweep_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
