#!/usr/bin/env python3
"""
Seed a development user for testing the external-identity login path.

The user has no password: it is linked to a fixed external id, so a client
can call POST /api/v1/auth/login with {"externalId": "auth0|dev-user-123"}
against a local server without a real Auth0 tenant.

Usage:
  python scripts/create_dev_user.py
  python scripts/create_dev_user.py --database-url sqlite:///dev.db
  python scripts/create_dev_user.py --external-id auth0|someone-else --email someone@hattbooks.com

Idempotent: if a user with the external id already exists it is printed and
left unchanged.
"""

import argparse
import sys
from typing import Optional

from auth.models import User
from auth.store import UserStore
from core.config import get_settings

DEV_EXTERNAL_ID = "auth0|dev-user-123"


def create_dev_user(
    store: UserStore,
    external_id: str = DEV_EXTERNAL_ID,
    email: str = "dev@hattbooks.com",
    username: str = "devuser",
) -> tuple[User, bool]:
    """Return (user, created). created is False when the user already existed."""
    existing = store.get_by_external_id(external_id)
    if existing is not None:
        return existing, False
    user = store.create_user(
        User(
            email=email,
            username=username,
            display_name="Dev User",
            external_id=external_id,
            auth_provider="auth0",
            avatar="https://api.dicebear.com/7.x/avataaars/svg?seed=dev",
            bio="Development test user for HattBooks",
        )
    )
    return user, True


def _print_user(user: User) -> None:
    print(f"  id:           {user.id}")
    print(f"  externalId:   {user.external_id}")
    print(f"  username:     {user.username}")
    print(f"  email:        {user.email}")
    print(f"  displayName:  {user.display_name}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Create the HattBooks development user.")
    parser.add_argument("--database-url", help="SQLAlchemy URL (defaults to DATABASE_URL from settings)")
    parser.add_argument("--external-id", default=DEV_EXTERNAL_ID, help="External identity id to link")
    parser.add_argument("--email", default="dev@hattbooks.com")
    parser.add_argument("--username", default="devuser")
    args = parser.parse_args(argv)

    store = UserStore(db_url=args.database_url or get_settings().database_url)
    try:
        user, created = create_dev_user(store, args.external_id, args.email.lower(), args.username.lower())
    except Exception as e:
        print(f"  [!] Error creating dev user: {e}")
        return 1
    finally:
        store.close()

    if created:
        print("\n  Dev user created successfully!\n")
    else:
        print("\n  Dev user already exists:\n")
    _print_user(user)
    print(f"\n  Use this externalId for testing: {user.external_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
