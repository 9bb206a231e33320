"""
Finalise expired exam attempts.

Any in-progress attempt whose time limit or exam deadline has passed is
graded from its saved answers and marked `timeout`. Students hitting the
app also trigger this lazily for their own attempts; run this periodically
(cron / scheduled job) so reports do not wait for them.

Usage:
  python scripts/auto_submit_expired.py
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.panotify.modules.exams.attempts import auto_submit_expired_exams
from scripts._db_utils import resolve_database_url, script_session

logger = logging.getLogger("auto_submit_expired")


def run(*, database_url: str | None = None) -> int:
    with script_session(resolve_database_url(database_url)) as s:
        count = auto_submit_expired_exams(s)
    logger.info("Auto-submitted %s expired attempt(s)", count)
    return count


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    count = run()
    print(f"Auto-submitted {count} expired attempt(s).", flush=True)


if __name__ == "__main__":
    main()
