import asyncio
import logging
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.endpoints import admin, generations
from app.core.database import Base, SessionLocal, engine
from app.core.errors import MMAError
from app.core.settings import settings
from app.models import credit_ledger, customer, generation, generation_step  # noqa: F401
from app.services.generation.runtime import build_runtime

if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    except Exception:
        pass

logger = logging.getLogger(__name__)

app = FastAPI(title="Mina Generation Engine API")

# Configure CORS
origins = settings.resolved_cors_origins()
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Mina-Pass-Id"],
    )


@app.exception_handler(MMAError)
async def mma_error_handler(request: Request, exc: MMAError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def startup() -> None:
    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)

    # tests install their own runtime before startup runs
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime(session_factory=SessionLocal)
    logger.info("app.startup mma_enabled=%s production=%s", settings.mma_enabled, settings.is_production)


@app.on_event("shutdown")
async def shutdown() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.aclose()


# API Routes
app.include_router(generations.router, prefix="/mma", tags=["mma"])
app.include_router(admin.router, prefix="/admin/mma", tags=["admin"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
