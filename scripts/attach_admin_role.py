#!/usr/bin/env python3
"""Grant the admin role to an existing account (idempotent).

Usage:
  python scripts/attach_admin_role.py --login jdoe
  python scripts/attach_admin_role.py --login jdoe@example.edu
"""

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import func, or_

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.panotify.audit import record_event
from app.panotify.models import Role, User
from scripts._db_utils import resolve_database_url, script_session


def attach_admin_role(login: str, *, database_url: str | None = None) -> bool:
    """Returns True when the role was newly attached."""
    login = login.strip()
    with script_session(resolve_database_url(database_url)) as s:
        user = (
            s.query(User)
            .filter(or_(func.lower(User.username) == login.lower(), User.email == login.lower()))
            .one_or_none()
        )
        if not user:
            raise SystemExit(f"User not found: {login}")
        role = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role:
            raise SystemExit("Admin role not found. Run python scripts/init_db.py first.")
        if role in (user.roles or []):
            print(f"User already has admin role: {user.username}")
            return False
        user.roles.append(role)
        record_event(
            s,
            actor=None,
            action="user.grant_admin",
            entity_type="User",
            entity_id=str(user.id),
            reason="scripts/attach_admin_role.py",
            metadata={"username": user.username},
        )
    print(f"Admin role attached to {login}")
    return True


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser()
    parser.add_argument("--login", required=True, help="Username or email of the account")
    args = parser.parse_args()
    attach_admin_role(args.login)


if __name__ == "__main__":
    main()
