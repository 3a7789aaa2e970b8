#!/usr/bin/env python3
"""
Persist the downgrade of users whose grandfathered premium has lapsed.

Reads already treat lapsed users as free/expired, so this only keeps the
stored rows (and dashboards built on them) in line. Safe to run on a schedule:
  python scripts/expire_grandfathered.py
  DATABASE_URL='postgresql://...' python scripts/expire_grandfathered.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv(project_root / ".env")
load_dotenv(project_root / ".env.local")

_database_url = os.getenv("DATABASE_URL")
if _database_url and _database_url.startswith("postgres://"):
    os.environ["DATABASE_URL"] = "postgresql://" + _database_url[10:]

from app.db.session import SessionLocal
from app.services.entitlement_store import EntitlementStore


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if not os.getenv("DATABASE_URL"):
        print("ERROR: DATABASE_URL not set. Add it to .env or export it.")
        sys.exit(1)

    db = SessionLocal()
    try:
        expired = EntitlementStore(ttl_seconds=0).expire_grandfathered(db)
    finally:
        db.close()
    print(f"Expired grandfathering for {expired} users.")


if __name__ == "__main__":
    main()
