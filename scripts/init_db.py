#!/usr/bin/env python3
"""
Create the SecureAuth database schema and purge stale single-use records.

Reads DATABASE_URL or the POSTGRES_* variables, like the API does.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --purge
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from secureauth.database.auth_db import get_auth_db


def main():
    print("=" * 60)
    print("SecureAuth Database Setup")
    print("=" * 60)

    db = get_auth_db()

    print("\n[1] Checking connection...")
    if not db.ping():
        print("    Database unreachable, check DATABASE_URL / POSTGRES_*")
        sys.exit(1)
    print("    OK")

    print("\n[2] Creating tables...")
    db.init_schema()
    print("    accounts, auth_records, passkeys, known_devices, sessions")

    if "--purge" in sys.argv[1:]:
        print("\n[3] Purging expired single-use records...")
        removed = db.purge_expired_records(datetime.now(timezone.utc))
        print(f"    Removed {removed} records")

    print("\n" + "=" * 60)
    print("Setup complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
