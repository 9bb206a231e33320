import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

# Repo root on sys.path when run as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.panotify.models import User
from app.panotify.rbac import ensure_roles
from scripts._db_utils import resolve_database_url, script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip()
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@panotify.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = resolve_database_url(database_url)

    # Uses its own engine; app.wsgi is not imported.
    with script_session(db_url) as s:
        roles = ensure_roles(s)
        role_admin = roles["admin"]

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                username=admin_username,
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                first_name="System",
                last_name="Administrator",
                account_type="Admin",
                is_active=True,
            )
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin username: {admin_username}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    load_dotenv()
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
