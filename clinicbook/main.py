# clinicbook/main.py
from __future__ import annotations

# Load .env early so os.getenv works everywhere
from dotenv import load_dotenv
load_dotenv()

import sqlalchemy as sa
from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbook.core.config import settings
from clinicbook.core.errors import NegotiationError
from clinicbook.core.logging import setup_logging, LoggingMiddleware, get_logger
from clinicbook.db.session import get_session

# Routers
from clinicbook.api.routes.appointments import router as appointments_router

# Set up structured logging
setup_logging(
    debug=settings.is_development,
    max_log_length=settings.MAX_LOG_LENGTH,
    level=settings.LOG_LEVEL,
)
logger = get_logger(__name__)

app = FastAPI(title="clinicbook", description="Dental appointment negotiation service")

logging_middleware = LoggingMiddleware(
    log_requests=settings.LOG_REQUESTS,
    log_responses=settings.LOG_RESPONSES,
)
app.middleware("http")(logging_middleware)


# -------- Error mapping: one status + kind per failure --------
@app.exception_handler(NegotiationError)
async def negotiation_error_handler(request: Request, exc: NegotiationError):
    logger.info(
        "negotiation_error",
        error_kind=exc.kind,
        error=exc.message,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# -------- Health / readiness (public) --------
@app.get("/healthz", include_in_schema=False)
async def healthz():
    return {"ok": True}

@app.get("/readyz", include_in_schema=False)
async def readyz(db: AsyncSession = Depends(get_session)):
    await db.execute(sa.text("SELECT 1"))
    return {"db": "ok"}


app.include_router(appointments_router)
