from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends

from planloop.api.dependencies import get_sessions
from planloop.runtime.sessions import SessionRegistry
from planloop.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "planloop",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/config")
def system_config(sessions: SessionRegistry = Depends(get_sessions)) -> dict[str, Any]:
    cfg = sessions.config
    return {
        "ts": time.time(),
        "execution": {
            "max_retries": cfg.execution.max_retries,
            "autonomous_mode": cfg.execution.autonomous_mode,
            "enforce_dependencies": cfg.execution.enforce_dependencies,
        },
        "verification": {
            "auto_verification_enabled": cfg.verification.auto_verification_enabled,
            "strictness": cfg.verification.strictness,
        },
        "journal": {"enabled": sessions.journal is not None},
        "sessions": len(sessions.list_ids()),
    }
