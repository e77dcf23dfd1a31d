"""FastAPI entry point for the affiliate desk."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from affiliate_desk import __version__, config
from affiliate_desk.database import init_db
from affiliate_desk.errors import AffiliateError
from affiliate_desk.routers import auth, commissions, leads, profiles, sales, settlements

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="Affiliate Desk", version=__version__, lifespan=lifespan)

app.include_router(auth.router)
app.include_router(profiles.router)
app.include_router(commissions.router)
app.include_router(leads.router)
app.include_router(sales.router)
app.include_router(settlements.router)


@app.get("/health")
def health() -> Response:
    """Simple health endpoint for load balancers and platform checks."""
    return Response(content='{"status":"ok"}', media_type="application/json")


@app.exception_handler(AffiliateError)
async def affiliate_error_handler(request: Request, exc: AffiliateError):
    """Translate domain errors into JSON with a status code per error kind."""
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.kind.value, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
