#!/usr/bin/env python
from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from horarios.services.schema_guard import verify_runtime_schema
from horarios.settings import get_settings

VERSIONS_DIR = ROOT_DIR / "horarios" / "migrations" / "versions"
REVISION_PATTERN = re.compile(r'^\s*revision\s*:\s*str\s*=\s*"([^"]+)"\s*$', re.MULTILINE)
MAX_REVISION_LENGTH = 32


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any]


def _check_revision_id_lengths() -> CheckResult:
    revisions = []
    for path in sorted(VERSIONS_DIR.glob("*.py")):
        match = REVISION_PATTERN.search(path.read_text(encoding="utf-8"))
        if match:
            revisions.append(match.group(1).strip())
    too_long = [revision for revision in revisions if len(revision) > MAX_REVISION_LENGTH]
    return CheckResult(
        name="migration_revision_length",
        status="fail" if too_long else "ok",
        details={"max_len": MAX_REVISION_LENGTH, "too_long": too_long, "total": len(revisions)},
    )


def _check_auth_config() -> CheckResult:
    settings = get_settings()
    secret_set = bool((settings.jwt_secret or "").strip())
    admin_hash_set = bool((settings.admin_pass_hash or "").strip())
    return CheckResult(
        name="admin_auth_config",
        status="ok" if secret_set and admin_hash_set else "fail",
        details={"jwt_secret_set": secret_set, "admin_pass_hash_set": admin_hash_set},
    )


def _check_attendance_timezone() -> CheckResult:
    name = (get_settings().attendance_timezone or "").strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return CheckResult(name="attendance_timezone", status="fail", details={"timezone": name})
    return CheckResult(name="attendance_timezone", status="ok", details={"timezone": name})


def _check_database_migration_and_schema() -> CheckResult:
    database_url = (get_settings().database_url or "").strip()
    if not database_url:
        return CheckResult(name="database_schema_guard", status="warn", details={"reason": "DATABASE_URL_NOT_SET"})

    script = ScriptDirectory.from_config(Config(str(ROOT_DIR / "alembic.ini")))
    expected_heads = sorted(script.get_heads())
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            rows = connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()
        current_versions = [str(row[0]).strip() for row in rows if row and row[0] is not None]
        schema_result = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    missing_heads = [head for head in expected_heads if head not in current_versions]
    return CheckResult(
        name="database_schema_guard",
        status="fail" if missing_heads or not schema_result.ok else "ok",
        details={
            "expected_heads": expected_heads,
            "current_versions": current_versions,
            "missing_heads": missing_heads,
            "schema_guard": schema_result.to_dict(),
        },
    )


def main() -> int:
    checks = [
        _check_revision_id_lengths(),
        _check_auth_config(),
        _check_attendance_timezone(),
        _check_database_migration_and_schema(),
    ]
    ok = not any(check.status == "fail" for check in checks)
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": ok,
        "checks": [{"name": check.name, "status": check.status, "details": check.details} for check in checks],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
