from __future__ import annotations

from fastapi import FastAPI, HTTPException

from tenantguard.api.routers import authz
from tenantguard.infra.cache import AUTHZ_CACHE_ENABLED, AUTHZ_CACHE_SHARED
from tenantguard.infra.db import check_db_ready
from tenantguard.infra.redis_state import check_redis_ready

# redis only backs the shared principal cache
REDIS_REQUIRED = AUTHZ_CACHE_ENABLED and AUTHZ_CACHE_SHARED

app = FastAPI(
    title="tenantguard",
    description="Multi-tenant role-based authorization engine.",
    version="0.1.0",
)

app.include_router(authz.router, prefix="/api/authz", tags=["authz"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    ready = db_ok
    if REDIS_REQUIRED:
        redis_ok = check_redis_ready()
        checks["redis"] = "ok" if redis_ok else "fail"
        ready = ready and redis_ok
    if not ready:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
