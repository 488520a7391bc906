"""Post scheduler entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass

import telegram

from src.admin.server import AdminServer
from src.config import settings
from src.notifications.router import NotificationRouter
from src.notifications.telegram_channel import TelegramChannel
from src.scheduler.executor import PostExecutor
from src.scheduler.queue import DispatchQueue
from src.scheduler.reporting import LoggingReporter, OwnerAlertReporter, Reporter
from src.scheduler.scanner import DueScanner
from src.scheduler.store import ScheduleStore

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The wired object graph. Built once at startup."""

    store: ScheduleStore
    router: NotificationRouter
    reporter: Reporter
    executor: PostExecutor
    queue: DispatchQueue
    scanner: DueScanner
    admin: AdminServer


def _init_notifications(bot: telegram.Bot) -> NotificationRouter:
    """Register notification channels and set the default."""
    router = NotificationRouter()
    router.register_channel(TelegramChannel(bot))
    router.set_default_channel(settings.default_notification_channel)
    logger.info(
        "Notifications initialized: channels=%s, default=%s",
        router.list_channels(),
        router.default_channel_name,
    )
    return router


def build_services(bot: telegram.Bot | None = None) -> Services:
    """Create the store, router, queue, scanner and admin server."""
    if bot is None:
        bot = telegram.Bot(settings.telegram_bot_token)

    store = ScheduleStore(settings.database_path)
    router = _init_notifications(bot)

    reporter: Reporter
    if settings.owner_chat_id:
        reporter = OwnerAlertReporter(router, settings.owner_chat_id)
    else:
        logger.warning("OWNER_CHAT_ID is empty — failures are only logged")
        reporter = LoggingReporter()

    executor = PostExecutor(store=store, router=router)
    queue = DispatchQueue(executor, store=store, reporter=reporter)
    scanner = DueScanner(store=store, queue=queue, reporter=reporter)
    admin = AdminServer(scanner, queue, store)
    return Services(
        store=store,
        router=router,
        reporter=reporter,
        executor=executor,
        queue=queue,
        scanner=scanner,
        admin=admin,
    )


async def start_services(services: Services) -> None:
    """Start the queue first so jobs seeded at startup are armed."""
    await services.queue.start()
    await services.scanner.start()
    initialized = await services.scanner.initialize_next_run_times()
    if initialized:
        logger.info("Seeded next run for %d schedule(s)", initialized)
    await services.admin.start()


async def stop_services(services: Services) -> None:
    """Stop accepting work, then stop firing jobs."""
    await services.admin.stop()
    await services.scanner.stop()
    await services.queue.stop()


async def run() -> None:
    """Run until SIGINT or SIGTERM."""
    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN is empty — nothing can be published, exiting")
        return

    services = build_services()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await start_services(services)
    logger.info("Post scheduler running (timezone=%s)", settings.scheduler_timezone)
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down post scheduler...")
        await stop_services(services)


def main() -> None:
    """Start the post scheduler."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
