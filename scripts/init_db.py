import os
import sys
from pathlib import Path

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.laft.constants import DEFAULT_CATEGORIES, PERMISSION_NAMES, ROLE_PERMISSIONS
from app.laft.models import Permission, Role, User
from app.laft.modules.items.models import Category
from scripts._db_utils import script_session


def seed(s: Session, *, admin_email: str | None = None, admin_password: str | None = None) -> dict[str, Role]:
    """
    Seed permissions, roles, categories and (optionally) an admin user.
    Idempotent; never overwrites an existing user's password. Returns roles by key.
    """

    def ensure_perm(key: str) -> Permission:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=PERMISSION_NAMES.get(key, key))
            s.add(p)
        return p

    perms = {key: ensure_perm(key) for key in PERMISSION_NAMES}

    roles: dict[str, Role] = {}
    for role_key, (role_name, perm_keys) in ROLE_PERMISSIONS.items():
        role = s.query(Role).filter(Role.key == role_key).one_or_none()
        if not role:
            role = Role(key=role_key, name=role_name)
            s.add(role)
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
        roles[role_key] = role

    for cat_key, cat_name in DEFAULT_CATEGORIES.items():
        if not s.query(Category).filter(Category.key == cat_key).one_or_none():
            s.add(Category(key=cat_key, name=cat_name))

    if admin_email:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password or "change-me"),
                full_name="Campus Administrator",
                is_active=True,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    s.flush()
    return roles


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@campus.example").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///laft.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        seed(s, admin_email=admin_email, admin_password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
