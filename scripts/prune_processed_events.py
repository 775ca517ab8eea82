# scripts/prune_processed_events.py

import os
import sys
import argparse
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from dotenv import load_dotenv
from sqlmodel import Session

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.clock import utcnow
from core.config import settings
from core.database import engine
from services import ledger

logger = logging.getLogger(__name__)


def prune(
    retention_days: Optional[int] = None,
    session_factory: Callable[[], Session] = lambda: Session(engine),
    now: Optional[datetime] = None,
) -> int:
    """Delete webhook idempotency records past the retention window."""
    days = settings.PROCESSED_EVENT_RETENTION_DAYS if retention_days is None else retention_days
    if days < 1:
        raise ValueError("retention must be at least one day")
    cutoff = (now or utcnow()) - timedelta(days=days)
    with session_factory() as session:
        return ledger.prune_processed_events(session, cutoff)


def main(argv=None) -> int:
    # ✅ Load environment variables
    load_dotenv()
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Prune processed Stripe webhook events.")
    parser.add_argument(
        "--days",
        type=int,
        default=settings.PROCESSED_EVENT_RETENTION_DAYS,
        help="Keep events processed within this many days",
    )
    args = parser.parse_args(argv)

    removed = prune(retention_days=args.days)
    print(f"🧹 Removed {removed} processed event(s) older than {args.days} day(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
