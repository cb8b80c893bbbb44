# ================================================================
# CEIBA — Reporting Backend
# FastAPI application hosting the automated report pipeline
# ================================================================

import logging
import os

from fastapi import FastAPI

from app.reporting import init_scheduler, register_reporting_routes
from app.reporting.scheduler import get_scheduler

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("reporting.main")

# ================================================================
# FASTAPI APP
# ================================================================

app = FastAPI(title="CEIBA Reporting")
register_reporting_routes(app)


@app.on_event("startup")
async def _startup():
    init_scheduler()
    logger.info("Reporting backend started")


@app.on_event("shutdown")
async def _shutdown():
    get_scheduler().shutdown()
    logger.info("Reporting backend stopped")


@app.get("/health")
async def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=os.environ.get("HOST", "127.0.0.1"),
                port=int(os.environ.get("PORT", "8000")))
