#!/usr/bin/env python3
"""
Postgres backup / restore with tiered retention.

A run on the 1st of the month is a "monthly" backup, a run on Sunday is
"weekly", anything else is "daily". After each backup, old files are pruned
per tier (30 daily, 12 weekly, 12 monthly).

Usage:
    python scripts/backup_db.py backup
    python scripts/backup_db.py list
    python scripts/backup_db.py restore backup-daily-2026-01-05T02-00-00.sql --confirm

Environment:
    DATABASE_URL: PostgreSQL connection string
    BACKUP_DIR:   target directory (default ./backups)
"""
from __future__ import annotations

import argparse
import os
import re
import subprocess
import sys
from datetime import date, datetime
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]

KEEP = {"daily": 30, "weekly": 12, "monthly": 12}
_FILENAME_RE = re.compile(r"^backup-(daily|weekly|monthly)-(\d{4}-\d{2}-\d{2})T[\d-]+\.sql$")


def backup_type(today: date) -> str:
    if today.day == 1:
        return "monthly"
    if today.weekday() == 6:  # Sunday
        return "weekly"
    return "daily"


def backup_filename(kind: str, now: datetime) -> str:
    return f"backup-{kind}-{now.strftime('%Y-%m-%dT%H-%M-%S')}.sql"


def backup_dir() -> Path:
    return Path(os.environ.get("BACKUP_DIR") or (ROOT / "backups"))


def _require_db_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL not found in environment variables.")
    if not db_url.startswith("postgres"):
        raise RuntimeError("Backups use pg_dump and require a Postgres DATABASE_URL.")
    return db_url


def run_backup(now: datetime | None = None) -> Path:
    now = now or datetime.now()
    db_url = _require_db_url()
    target_dir = backup_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / backup_filename(backup_type(now.date()), now)

    print(f"Starting database backup -> {path}", flush=True)
    subprocess.run(["pg_dump", "--no-owner", "--file", str(path), db_url], check=True)
    print(f"Backup created successfully: {path}", flush=True)
    return path


def prune_backups(directory: Path, keep: dict[str, int] = KEEP) -> list[Path]:
    """Delete the oldest backups of each tier beyond its retention count. Returns removed paths."""
    tiers: dict[str, list[tuple[str, Path]]] = {kind: [] for kind in keep}
    for p in directory.glob("backup-*.sql"):
        m = _FILENAME_RE.match(p.name)
        if not m:
            continue
        tiers[m.group(1)].append((p.name, p))

    removed: list[Path] = []
    for kind, files in tiers.items():
        # timestamped names sort chronologically
        files.sort(reverse=True)
        for _name, p in files[keep[kind]:]:
            p.unlink()
            print(f"Removed old backup: {p.name}", flush=True)
            removed.append(p)
    return removed


def list_backups(directory: Path) -> list[str]:
    if not directory.exists():
        return []
    return sorted((p.name for p in directory.glob("backup-*.sql")), reverse=True)


def run_restore(filename: str) -> None:
    db_url = _require_db_url()
    path = backup_dir() / filename
    if not path.exists():
        raise FileNotFoundError(f"Backup file not found: {path}")
    print(f"Restoring database from {path.name}...", flush=True)
    subprocess.run(["psql", db_url, "-f", str(path)], check=True)
    print("Database restore completed successfully.", flush=True)


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Database backup/restore")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("backup", help="Create a backup and prune old ones")
    sub.add_parser("list", help="List available backups (newest first)")
    p_restore = sub.add_parser("restore", help="Restore a backup (overwrites the current database)")
    p_restore.add_argument("filename")
    p_restore.add_argument("--confirm", action="store_true", help="Required: acknowledge data will be overwritten")
    args = parser.parse_args()

    try:
        if args.command == "backup":
            run_backup()
            prune_backups(backup_dir())
        elif args.command == "list":
            names = list_backups(backup_dir())
            if not names:
                print("No backups found.")
            for name in names:
                print(name)
        elif args.command == "restore":
            if not args.confirm:
                print("Restore overwrites the current database. Re-run with --confirm to proceed.")
                sys.exit(2)
            run_restore(args.filename)
    except (RuntimeError, FileNotFoundError, subprocess.CalledProcessError) as e:
        print(f"{args.command} failed: {e}", flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
