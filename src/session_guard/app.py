"""FastAPI status server: read-only view of identity, lock and sessions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse

from .config import HOST, LOG_FILE, LOG_RETENTION_DAYS, PORT, SESSIONS_DIR, lock_path, session_path
from .identity.resolver import IdentityResolver
from .lock_file import LockFileManager
from .log import cleanup_old_logs, configure_logging, list_log_files
from .session.backup import BackupManager
from .session.diagnostics import DiagnosticsReporter, format_report
from .session.validation import SessionValidator, discover_session_directories

logger = logging.getLogger(__name__)

app = FastAPI(title="Session Guard", version="0.1.0")

# Singletons, created on first use
_base_dir: Path = SESSIONS_DIR
_resolver: IdentityResolver | None = None
_validator: SessionValidator | None = None


def _get_resolver() -> IdentityResolver:
    global _resolver
    if _resolver is None:
        _resolver = IdentityResolver()
    return _resolver


def _get_validator() -> SessionValidator:
    global _validator
    if _validator is None:
        _validator = SessionValidator()
    return _validator


def _get_lock() -> LockFileManager:
    return LockFileManager(lock_path(_base_dir))


# ── Identity ──────────────────────────────────────────────────────────────

@app.get("/api/identity")
async def get_identity():
    identity = await asyncio.to_thread(_get_resolver().resolve)
    return {
        **identity.model_dump(mode="json"),
        "session_path": str(session_path(_base_dir, identity.id)),
    }


@app.post("/api/identity/refresh")
async def refresh_identity():
    _get_resolver().invalidate_cache()
    return await get_identity()


# ── Lock ──────────────────────────────────────────────────────────────────

@app.get("/api/lock")
async def get_lock():
    info = await asyncio.to_thread(_get_lock().get_lock_info)
    if info is None:
        return {"locked": False, "lock": None}
    return {"locked": True, "lock": info.model_dump(mode="json")}


# ── Sessions ──────────────────────────────────────────────────────────────

@app.get("/api/sessions")
async def list_sessions():
    validator = _get_validator()

    def _describe_all():
        return [validator.describe(p) for p in discover_session_directories(_base_dir)]

    return [d.model_dump(mode="json") for d in await asyncio.to_thread(_describe_all)]


@app.get("/api/sessions/validate")
async def validate_session(
    instance_id: str | None = Query(default=None),
    quick: bool = Query(default=False),
):
    if instance_id:
        target_id = instance_id
    else:
        target_id = (await asyncio.to_thread(_get_resolver().resolve)).id
    path = session_path(_base_dir, target_id)
    if path.parent != _base_dir:
        raise HTTPException(status_code=400, detail="Invalid instance id")
    validator = _get_validator()
    if quick:
        return {"session_path": str(path), "is_valid": await asyncio.to_thread(validator.quick_validate, path)}
    report = await asyncio.to_thread(validator.validate, path)
    return report.model_dump(mode="json")


@app.get("/api/backups")
async def list_backups(session_name: str | None = Query(default=None)):
    backups = await asyncio.to_thread(BackupManager().list_backups, session_name)
    return [b.model_dump(mode="json") for b in backups]


# ── Diagnostics ───────────────────────────────────────────────────────────

def _reporter() -> DiagnosticsReporter:
    return DiagnosticsReporter(_base_dir, validator=_get_validator(), resolver=_get_resolver())


@app.get("/api/diagnostics")
async def diagnostics():
    report = await asyncio.to_thread(_reporter().generate_report)
    return report.model_dump(mode="json")


@app.get("/api/diagnostics/text", response_class=PlainTextResponse)
async def diagnostics_text():
    report = await asyncio.to_thread(_reporter().generate_report)
    return format_report(report)


@app.get("/api/settings/logs")
async def get_log_settings():
    cleanup_old_logs()
    files = list_log_files()
    return {
        "retention_days": LOG_RETENTION_DAYS,
        "current": str(LOG_FILE),
        "total_size_bytes": sum(p.stat().st_size for p in files),
        "files": [
            {
                "name": p.name,
                "size_bytes": p.stat().st_size,
                "modified_at": datetime.fromtimestamp(p.stat().st_mtime).astimezone().isoformat(),
            }
            for p in files
        ],
    }


# ── Entrypoint ────────────────────────────────────────────────────────────

def main():
    """Start the status server."""
    configure_logging()
    logger.info("Starting session-guard status server at http://%s:%d", HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT, log_level="info", log_config=None)
