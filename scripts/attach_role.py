#!/usr/bin/env python3
"""Grant a role (security or admin) to an existing user (idempotent).

Usage:
  python scripts/attach_role.py --email guard@campus.example --role security
"""

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.laft.constants import ROLE_PERMISSIONS
from app.laft.models import Role, User
from scripts._db_utils import script_session


def attach_role(db_url: str, email: str, role_key: str) -> bool:
    """Returns True when the role was newly attached."""
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email.ilike(email)).one_or_none()
        if not user:
            print(f"User not found: {email}")
            return False
        role = s.query(Role).filter(Role.key == role_key).one_or_none()
        if not role:
            print(f"Role '{role_key}' not found. Run python scripts/init_db.py first.")
            return False
        if role in (user.roles or []):
            print(f"User already has role '{role_key}': {email}")
            return False
        user.roles.append(role)
    print(f"Role '{role_key}' attached to {email}")
    return True


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", default="admin", choices=sorted(ROLE_PERMISSIONS), help="Role key to attach")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///laft.db").strip()
    attach_role(db_url, args.email.strip().lower(), args.role)


if __name__ == "__main__":
    main()
