# backend/sca/main.py
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import resources, tasks
from .catalog import load_catalog
from .config import settings
from .core.exceptions import SCAError, UnauthorizedError
from .database import close_mongo_connection, connect_to_mongo, init_database, ping
from .services.container import build_services

# Configure logging first
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the database, load the catalog and wire the services"""
    logger.info("🚀 Starting SCA core...")

    database = await connect_to_mongo()
    await init_database(database)
    catalog = load_catalog(settings.CATALOG_PATH)
    services = build_services(database, catalog, settings)
    app.state.services = services
    logger.info("✅ Services initialized")

    if settings.RUN_POLLER:
        services.poller.start()
        logger.info("✅ Task poller running in-process")

    logger.info("🎉 SCA core startup completed successfully")
    try:
        yield
    finally:
        logger.info("🔄 Shutting down services...")
        await services.poller.stop()
        await close_mongo_connection()
        logger.info("✅ Shutdown completed.")


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Task orchestration and remote execution on user registered resources.",
    version="1.0.0",
    lifespan=lifespan,
)

# --- MIDDLEWARE REGISTRATION ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests and add process time header."""
    start_time = datetime.utcnow()
    response = await call_next(request)
    process_time = (datetime.utcnow() - start_time).total_seconds()
    response.headers["X-Process-Time"] = str(process_time)
    if not request.url.path.endswith('/health'):
        logger.info(f'{request.method} {request.url.path} - Status {response.status_code} - Took {process_time:.4f}s')
    return response

# --- API ROUTER INCLUSION ---
app.include_router(resources.router)
app.include_router(tasks.router)


# --- EXCEPTION HANDLERS ---
@app.exception_handler(SCAError)
async def sca_exception_handler(request: Request, exc: SCAError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message}, headers=headers)

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.error(f"HTTP {exc.status_code} error on {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query"))
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    error_id = f"err_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}"
    logger.error(f"Unhandled exception (ID: {error_id}) on {request.url.path}: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "An unexpected internal server error occurred.", "error_id": error_id},
    )


@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """Liveness plus a database ping"""
    health_status = {"status": "healthy", "timestamp": datetime.utcnow().isoformat(), "services": {}}

    services = getattr(request.app.state, "services", None)
    if services is not None and await ping(services.db):
        health_status["services"]["database"] = "healthy"
    else:
        health_status["services"]["database"] = "unavailable"
        health_status["status"] = "degraded"

    if services is not None:
        health_status["services"]["poller"] = "running" if services.poller.running else "stopped"
    return health_status


if __name__ == "__main__":
    import uvicorn
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "false").lower() == "true"

    logger.info(f"Starting server at http://{host}:{port} with reload={'enabled' if reload else 'disabled'}")
    uvicorn.run("sca.main:app", host=host, port=port, reload=reload, log_level=settings.LOG_LEVEL.lower())
