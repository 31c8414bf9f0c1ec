from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from gearguard.api.routers import catalog, equipment, identity, requests, teams
from gearguard.infra.audit import AuditMiddleware
from gearguard.infra.db import check_db_ready
from gearguard.infra.logging import RequestIdMiddleware, setup_logging
from gearguard.infra.notifications import notification_dispatcher

setup_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    notification_dispatcher.start()
    yield
    notification_dispatcher.stop()


app = FastAPI(
    title="gearguard",
    description="Maintenance request lifecycle service for equipment fleets.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)
app.add_middleware(RequestIdMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(catalog.router, prefix="/api/catalog", tags=["catalog"])
app.include_router(equipment.router, prefix="/api/equipment", tags=["equipment"])
app.include_router(teams.router, prefix="/api/teams", tags=["teams"])
app.include_router(requests.router, prefix="/api/requests", tags=["requests"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
