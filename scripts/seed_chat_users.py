#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from datetime import timedelta
from pathlib import Path

from marketplace_messaging.directory import SqlAlchemyDirectory
from marketplace_messaging.session_tokens import SessionTokenSigner

CHAT_USERS = (
    {"user_id": "buyer-1", "name": "Buyer One", "email": "buyer1@example.com", "role": "buyer"},
    {"user_id": "seller-1", "name": "Seller One", "email": "seller1@example.com", "role": "seller"},
    {"user_id": "agent-1", "name": "Agent One", "email": "agent1@example.com", "role": "agent"},
)
CHAT_PROPERTY = {"property_id": "property-1", "title": "3 bed family home on Elm Street"}


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Seed a test buyer, seller, agent and property into the directory tables "
            "and print session tokens for local chat testing."
        )
    )
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL (defaults to DATABASE_URL).")
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=24 * 60,
        help="Lifetime of the printed session tokens.",
    )
    parser.add_argument("--env-file", default=".env", help="Optional dotenv file to load first.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    _load_dotenv(Path(args.env_file))
    database_url = (args.database_url or os.getenv("DATABASE_URL", "")).strip()
    if not database_url:
        raise SystemExit("DATABASE_URL (or --database-url) is required")
    signer = SessionTokenSigner(os.getenv("SESSION_TOKEN_SECRET", "dev-session-secret"))

    directory = SqlAlchemyDirectory(database_url)
    directory.upsert_property(CHAT_PROPERTY["property_id"], title=CHAT_PROPERTY["title"])

    seeded = []
    for user in CHAT_USERS:
        directory.upsert_user(user["user_id"], name=user["name"], role=user["role"], email=user["email"])
        token = signer.issue(user["user_id"], ttl=timedelta(minutes=args.ttl_minutes))
        seeded.append({"user_id": user["user_id"], "role": user["role"], "email": user["email"], "token": token})

    print(json.dumps({"property_id": CHAT_PROPERTY["property_id"], "users": seeded}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
