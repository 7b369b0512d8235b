"""
Relay Background Worker
Runs only the collection scheduler, without the HTTP surface

Usage:
    python worker.py

Deployment:
    - Type: Background Worker
    - Start Command: python worker.py
    - Environment: Same as the API (SUPABASE_URL, GOOGLE_CLIENT_ID, etc.)

SIGTERM/SIGINT stop further ticks; an in-flight cycle finishes before exit.
"""
import asyncio
import logging

from relay.core.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (if configured)
if settings.sentry_dsn:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            integrations=[
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
            ]
        )
        logger.info("✅ Sentry initialized in worker")
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry in worker: {e}")
else:
    logger.info("ℹ️  Sentry not configured (SENTRY_DSN not set)")


async def run_worker() -> None:
    from relay.core.dependencies import get_scheduler, initialize_clients, shutdown_clients

    await initialize_clients(start_scheduler=True)
    scheduler = get_scheduler()
    scheduler.install_signal_handlers()
    logger.info("✅ Relay worker running")

    try:
        await scheduler.wait_stopped()
    finally:
        await shutdown_clients()


if __name__ == "__main__":
    asyncio.run(run_worker())
