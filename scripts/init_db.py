import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm.models import Role, User  # noqa: E402

logger = logging.getLogger("scripts.init_db")

ROLES = (
    ("admin", "Administrator"),
    ("user", "Sales user"),
)


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed_roles(s: Session) -> dict[str, Role]:
    out: dict[str, Role] = {}
    for key, name in ROLES:
        r = s.query(Role).filter(Role.key == key).one_or_none()
        if not r:
            r = Role(key=key, name=name)
            s.add(r)
        out[key] = r
    return out


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed roles and the admin account in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///crm.db").strip()

    with _session_scope(db_url) as s:
        roles = seed_roles(s)
        user = s.query(User).filter(User.username == admin_username).one_or_none()
        if not user:
            user = User(username=admin_username, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    logger.info("Initialized database (seed_only). Admin username: %s", admin_username)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
