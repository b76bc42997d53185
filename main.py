import argparse
import asyncio
import logging
import threading
from datetime import timedelta

from scripts.bootstrap import ENV_FILE, configure_logging, load_dotenv

load_dotenv(ENV_FILE)

from bot.bot import start_bot  # noqa: E402
from panel import orders, reset_traffic, stats, transients  # noqa: E402
from panel.app import create_app  # noqa: E402
from panel.db import SessionLocal, init_db  # noqa: E402
from panel.helpers import utcnow  # noqa: E402
from scripts.run_web import serve_app  # noqa: E402

logger = logging.getLogger("panel")


def run_api():
    serve_app(create_app())


async def run_both():
    flask_thread = threading.Thread(target=run_api, daemon=True)
    flask_thread.start()
    await start_bot()


def run_check_orders() -> None:
    with SessionLocal() as db:
        cancelled, opened = orders.check_orders(db)
        purged = transients.purge_expired(db)
        db.commit()
    logger.info("check-orders: cancelled=%s opened=%s purged=%s", cancelled, opened, purged)


def run_daily_stats() -> None:
    day = (utcnow() - timedelta(days=1)).date()
    with SessionLocal() as db:
        stats.record_daily_stats(db, day)
        db.commit()
    logger.info("stats recorded for %s", day.isoformat())


def main():
    parser = argparse.ArgumentParser(description="Orbita panel services")
    parser.add_argument(
        "service",
        nargs="?",
        choices=["api", "bot", "all", "reset-traffic", "check-orders", "stats"],
        default="all",
        help="Service or maintenance task to run (default: all)",
    )
    args = parser.parse_args()
    configure_logging()
    init_db()

    if args.service == "api":
        run_api()
    elif args.service == "bot":
        asyncio.run(start_bot())
    elif args.service == "reset-traffic":
        reset_traffic.run()
    elif args.service == "check-orders":
        run_check_orders()
    elif args.service == "stats":
        run_daily_stats()
    else:
        asyncio.run(run_both())


if __name__ == "__main__":
    main()
