# collision/monitoring.py
from __future__ import annotations

import smtplib
import time
from typing import Any, Dict, List

from sqlalchemy import text

from collision.core.config import settings
from collision.database import get_sessionmaker


def _check(name: str, ok: bool, detail: str = "", extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
    row: Dict[str, Any] = {"name": name, "ok": bool(ok)}
    if detail:
        row["detail"] = detail
    if extra:
        row["extra"] = extra
    return row


def run_selftest(quick: bool = True) -> dict:
    checks: List[Dict[str, Any]] = []

    # --- ENV sanity ---
    checks.append(_check("env:DATABASE_URL", bool(settings.DATABASE_URL)))
    checks.append(_check(
        "env:SECRET_KEY",
        bool(settings.SECRET_KEY) and settings.SECRET_KEY != "change-me",
        detail="set a real secret in production",
    ))
    checks.append(_check(
        "env:SMTP",
        True,
        detail="configured" if settings.SMTP_HOST else "optional (emails fail fast if missing)",
    ))

    # --- DB ---
    db_ok = False
    db_err = ""
    t0 = time.time()
    try:
        db = get_sessionmaker()()
        try:
            db.execute(text("SELECT 1"))
            db_ok = True
        finally:
            db.close()
    except Exception as e:
        db_err = repr(e)

    checks.append(_check("db:select1", db_ok, detail=db_err, extra={"ms": int((time.time() - t0) * 1000)}))

    # --- Optional deeper checks (non-blocking for quick) ---
    if not quick:
        smtp_ok = True
        smtp_err = "skipped (SMTP_HOST missing)"
        if settings.SMTP_HOST:
            smtp_ok = False
            smtp_err = ""
            try:
                cls = smtplib.SMTP_SSL if settings.SMTP_USE_SSL else smtplib.SMTP
                with cls(settings.SMTP_HOST, settings.SMTP_PORT, timeout=5) as server:
                    code, _ = server.noop()
                smtp_ok = code == 250
                smtp_err = f"noop={code}"
            except (smtplib.SMTPException, OSError) as e:
                smtp_err = repr(e)

        checks.append(_check("smtp:noop", smtp_ok, detail=smtp_err))

    status = "ok" if all(c.get("ok") for c in checks) else "degraded"
    return {"status": status, "checks": checks}
