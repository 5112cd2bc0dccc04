"""
Listener Worker: runs the notification listener as its own process.

The worker subscribes to the completion topic and sends summary emails
until it is stopped (SIGINT/SIGTERM) or the listener gives up
reconnecting. A fatal listener exit is alerted and ends the process with
status 1 so the supervisor restarts it.
"""

import asyncio
import logging
import signal

from ..core.config import Settings, get_settings
from ..services.alerting import send_alert
from ..services.exceptions import ListenerFatalError
from ..services.pipeline import VotingPipeline

logger = logging.getLogger(__name__)


async def run_listener_worker(settings: Settings | None = None) -> int:
    """Run until stopped. Returns the process exit status."""
    settings = settings or get_settings()
    pipeline = VotingPipeline.from_settings(settings)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Platforms without signal support in the event loop
            pass

    await pipeline.start()
    logger.info(f"Listener worker running on '{settings.voting_channel_topic}'")

    listener_done = asyncio.create_task(pipeline.listener.wait())
    stop_waiter = asyncio.create_task(stop_requested.wait())
    exit_code = 0
    try:
        done, _ = await asyncio.wait(
            {listener_done, stop_waiter},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if listener_done in done:
            listener_done.result()
    except ListenerFatalError as e:
        logger.critical(f"Notification listener exited: {e}")
        await send_alert(
            title="Notification Listener Down",
            message=str(e),
            severity="critical",
            details={"topic": settings.voting_channel_topic},
            slack_webhook_url=settings.slack_alerts_webhook_url,
            alert_webhook_url=settings.alert_webhook_url,
        )
        exit_code = 1
    finally:
        stop_waiter.cancel()
        # Lets the summary in progress finish before the listener exits
        await pipeline.stop()
        if not listener_done.done():
            listener_done.cancel()

    logger.info(f"Listener worker stopped (exit status {exit_code})")
    return exit_code


def main():
    """CLI entry point for the listener worker."""
    import argparse

    parser = argparse.ArgumentParser(description="Run the voting notification listener")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    raise SystemExit(asyncio.run(run_listener_worker()))


if __name__ == "__main__":
    main()
