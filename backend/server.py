"""
RepairDesk CRM - API Backend

Start with:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging

import config
from services.errors import CRMError
from services.store import Store

# Configuration logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("repairdesk")

# Create the app
app = FastAPI(
    title="RepairDesk CRM",
    description="Device repair leads, invoices and dashboard metrics",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== ERRORS ====================

@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} -> {type(exc).__name__}: {exc.message}")
    else:
        logger.info(f"[API] {request.method} {request.url.path} -> {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__, **_jsonable(exc.details)},
    )


def _jsonable(details: dict) -> dict:
    return {k: v for k, v in details.items() if v is not None and k not in ("detail", "error")}


# ==================== ROUTES ====================

from routes import leads, invoices, stats, staff, activity

app.include_router(leads.router, prefix="/api")
app.include_router(invoices.router, prefix="/api")
app.include_router(stats.router, prefix="/api")
app.include_router(staff.router, prefix="/api")
app.include_router(activity.router, prefix="/api")


@app.get("/api/health")
async def health():
    return {"status": "ok", "name": "RepairDesk CRM", "version": app.version}


# ==================== STARTUP / SHUTDOWN ====================

@app.on_event("startup")
async def startup():
    await Store(config.db).ensure_indexes()

    if config.ENABLE_SCHEDULER:
        from scheduler_service import task_scheduler
        task_scheduler.start()

    logger.info(f"RepairDesk CRM started (db={config.DB_NAME})")


@app.on_event("shutdown")
async def shutdown():
    if config.ENABLE_SCHEDULER:
        from scheduler_service import task_scheduler
        task_scheduler.stop()
    config.client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
