"""
Deadline Sweep Job: concludes items whose voting deadline has passed.

Votes trigger completion as they arrive, but an item nobody votes on after
its deadline only concludes when this job runs. It runs as a scheduled job
(cron or similar) next to the listener worker; completions are published
on the configured event channel, so the postgres backend is required for
the worker to see them.

Typical cron schedule: */5 * * * * (every five minutes)
"""

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import Settings, get_settings
from ..services.alerting import send_alert
from ..services.pipeline import VotingPipeline

logger = logging.getLogger(__name__)


# =============================================================================
# JOB RUNNER
# =============================================================================


async def run_deadline_sweep(
    database_url: str | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """
    Run one deadline sweep.

    Args:
        database_url: PostgreSQL connection string (defaults to settings)
        settings: application settings (defaults to the environment)

    Returns:
        Summary of the run
    """
    settings = settings or get_settings()
    url = database_url or str(settings.database_url)
    async_url = url.replace("postgresql://", "postgresql+asyncpg://")

    engine = create_async_engine(async_url, pool_pre_ping=True)
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    start_time = datetime.now(timezone.utc)
    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "checked": 0,
        "completed": [],
        "errors": [],
    }

    pipeline = VotingPipeline(settings, session_factory)
    await pipeline.start(listen=False)
    try:
        sweep = await pipeline.voting.sweep_expired_deadlines()
        results["checked"] = sweep.checked
        results["completed"] = [
            {"item_id": str(e.item_id), "kind": e.kind.value, "status": e.outcome.status.value}
            for e in sweep.completed
        ]
        results["errors"] = sweep.errors

    except Exception as e:
        error_msg = f"Deadline sweep failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await send_alert(
            title="Deadline Sweep Failed",
            message="The voting deadline sweep crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
            slack_webhook_url=settings.slack_alerts_webhook_url,
            alert_webhook_url=settings.alert_webhook_url,
        )
        raise

    finally:
        await pipeline.stop()
        await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Deadline sweep completed in {results['duration_seconds']:.2f}s: "
        f"{results['checked']} expired, {len(results['completed'])} concluded"
    )

    if results["errors"]:
        await send_alert(
            title="Deadline Sweep Completed with Errors",
            message=f"{len(results['errors'])} item(s) could not be concluded.",
            severity="warning",
            details={"errors": results["errors"][:5]},
            slack_webhook_url=settings.slack_alerts_webhook_url,
            alert_webhook_url=settings.alert_webhook_url,
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the deadline sweep."""
    import argparse
    import os

    parser = argparse.ArgumentParser(description="Conclude votes whose deadline has passed")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        results = asyncio.run(run_deadline_sweep(database_url=args.database_url))
        print(f"Sweep completed: {results}")
    except Exception as e:
        print(f"Sweep failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
