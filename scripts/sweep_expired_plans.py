#!/usr/bin/env python3
"""Run the Plus expiration sweep once, outside the Celery beat schedule.

Idempotent: users already moved back to free are skipped.

Usage:
  python scripts/sweep_expired_plans.py --dry-run
  python scripts/sweep_expired_plans.py
"""
from __future__ import annotations

import argparse

from app.core.logger import init_logging
from app.services.container import build_services


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="list expired users without changing them")
    args = parser.parse_args(argv)

    init_logging()
    services = build_services()
    try:
        result = services.lifecycle.sweep_expired(dry_run=args.dry_run)
    finally:
        services.close()

    if args.dry_run:
        print(f"{len(result.candidates)} expired Plus user(s) would be moved to free:")
        for uid in result.candidates:
            print(f"  - {uid}")
    else:
        print(f"Sweep complete. Converted: {result.converted}, skipped: {result.skipped}, failed: {result.failed}")
    if result.interrupted:
        print("Sweep interrupted by a Firestore error; the next run picks up the rest.")
    return 1 if result.failed or result.interrupted else 0


if __name__ == "__main__":
    raise SystemExit(main())
