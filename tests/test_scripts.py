from datetime import date, datetime

import pytest

from app.laft.db import session_scope
from app.laft.models import Role, User
from app.laft.modules.items.models import Category
from scripts import backup_db
from scripts.attach_role import attach_role
from scripts.init_db import seed
from scripts.start import gunicorn_argv


def _backup_type(iso: str) -> str:
    return backup_db.backup_type(date.fromisoformat(iso))


def test_backup_type_tiers():
    assert _backup_type("2026-02-01") == "monthly"  # 1st of the month wins over Sunday
    assert _backup_type("2026-01-04") == "weekly"
    assert _backup_type("2026-01-05") == "daily"


def test_backup_filename():
    name = backup_db.backup_filename("daily", datetime(2026, 1, 5, 2, 0, 0))
    assert name == "backup-daily-2026-01-05T02-00-00.sql"


def test_prune_backups_keeps_newest_per_tier(tmp_path):
    for day in range(1, 6):
        (tmp_path / f"backup-daily-2026-01-0{day}T02-00-00.sql").write_text("--")
    for day in (4, 11, 18):
        (tmp_path / f"backup-weekly-2026-01-{day:02d}T02-00-00.sql").write_text("--")
    (tmp_path / "backup-monthly-2026-01-01T02-00-00.sql").write_text("--")
    (tmp_path / "notes.txt").write_text("keep me")

    removed = backup_db.prune_backups(tmp_path, keep={"daily": 2, "weekly": 1, "monthly": 12})

    assert sorted(p.name for p in removed) == [
        "backup-daily-2026-01-01T02-00-00.sql",
        "backup-daily-2026-01-02T02-00-00.sql",
        "backup-daily-2026-01-03T02-00-00.sql",
        "backup-weekly-2026-01-04T02-00-00.sql",
        "backup-weekly-2026-01-11T02-00-00.sql",
    ]
    assert backup_db.list_backups(tmp_path) == [
        "backup-weekly-2026-01-18T02-00-00.sql",
        "backup-monthly-2026-01-01T02-00-00.sql",
        "backup-daily-2026-01-05T02-00-00.sql",
        "backup-daily-2026-01-04T02-00-00.sql",
    ]
    assert (tmp_path / "notes.txt").exists()


def test_list_backups_missing_dir(tmp_path):
    assert backup_db.list_backups(tmp_path / "nope") == []


def test_run_backup_invokes_pg_dump(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setenv("DATABASE_URL", "postgresql://laft@localhost/laft")
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setattr(backup_db.subprocess, "run", lambda argv, check: calls.append(argv))

    path = backup_db.run_backup(datetime(2026, 1, 4, 3, 30, 0))

    assert path == tmp_path / "backups" / "backup-weekly-2026-01-04T03-30-00.sql"
    assert calls == [["pg_dump", "--no-owner", "--file", str(path), "postgresql://laft@localhost/laft"]]


def test_backup_requires_postgres(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///laft.db")
    with pytest.raises(RuntimeError, match="require a Postgres DATABASE_URL"):
        backup_db.run_backup()


def test_restore_missing_file(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://laft@localhost/laft")
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path))
    with pytest.raises(FileNotFoundError):
        backup_db.run_restore("backup-daily-2026-01-05T02-00-00.sql")


def test_gunicorn_argv():
    argv = gunicorn_argv("9000", "3")
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert "0.0.0.0:9000" in argv
    assert argv[argv.index("--workers") + 1] == "3"


def test_seed_is_idempotent(app):
    with session_scope(app) as s:
        seed(s, admin_email="admin@example.com", admin_password="different-password")

    with session_scope(app) as s:
        assert s.query(Role).count() == 3
        assert s.query(Category).count() == 9
        assert s.query(User).filter(User.email == "admin@example.com").count() == 1
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        assert "accounts.manage" in {p.key for r in admin.roles for p in r.permissions}


def test_attach_role(app):
    db_url = app.config["DATABASE_URL"]
    assert attach_role(db_url, "bob@example.com", "security") is True
    assert attach_role(db_url, "bob@example.com", "security") is False
    assert attach_role(db_url, "nobody@example.com", "security") is False

    with session_scope(app) as s:
        bob = s.query(User).filter(User.email == "bob@example.com").one()
        assert bob.role_keys == {"user", "security"}
