from __future__ import annotations

from fastapi import FastAPI, HTTPException

from identity_core.api.routers import admin, auth, oauth, services
from identity_core.infra.cache import SERVICE_CACHE_BACKEND, build_service_cache
from identity_core.infra.db import check_db_ready
from identity_core.infra.logging_config import configure_logging
from identity_core.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="identity-core",
    description="Token resolution, permissions, OAuth federation and service entitlements.",
    version="0.1.0",
)

app.state.service_cache = build_service_cache()

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(oauth.router, prefix="/api/oauth", tags=["oauth"])
app.include_router(services.router, prefix="/api/services", tags=["services"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    redis_ok = True
    # Redis backs only the service cache.
    if SERVICE_CACHE_BACKEND == "redis":
        redis_ok = check_redis_ready()
        checks["redis"] = "ok" if redis_ok else "fail"
    else:
        checks["redis"] = "skipped"
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
