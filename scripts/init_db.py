"""
Create tables and run data repair passes (usernames, record owners, expired sessions). Idempotent; safe to run on every release.

Usage:
    python scripts/init_db.py
"""
import logging
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.campsite import create_app  # noqa: E402
from app.campsite.db import session_scope  # noqa: E402
from app.campsite.identity import backfill_usernames  # noqa: E402
from app.campsite.models import Base  # noqa: E402
from app.campsite.repair import assign_orphaned_records  # noqa: E402
from app.campsite.sessions import purge_expired  # noqa: E402

logger = logging.getLogger("init_db")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        app = create_app()
    except RuntimeError as e:
        logger.critical("Startup failed: %s", e)
        sys.exit(1)

    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    logger.info("Schema ready")

    with session_scope(app) as s:
        updated = backfill_usernames(s)
        reassigned = assign_orphaned_records(s)
        purged = purge_expired(s)
    logger.info(
        "Backfilled %s usernames; reassigned %s listings and %s reviews; purged %s expired sessions",
        updated,
        reassigned["listings"],
        reassigned["reviews"],
        purged,
    )


if __name__ == "__main__":
    main()
