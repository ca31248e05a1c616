import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from journey_engine.clock import utc_now
from journey_engine.db.init import init_db
from journey_engine.errors import JourneyEngineError
from journey_engine.api.engine import router as engine_router
from journey_engine.api.journeys import router as journeys_router
from journey_engine.api.enrollments import router as enrollments_router
from journey_engine.api.tracking import router as tracking_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    logger.info("Initializing database...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
    logger.info("Celery worker and beat should be running in separate processes.")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")


app = FastAPI(title="Journey Engine", lifespan=lifespan)

# For production, restrict this to the CRM frontend's domain.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(JourneyEngineError)
async def journey_engine_error_handler(request: Request, exc: JourneyEngineError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/")
async def root():
    return {"message": "Journey Engine API"}


@app.get("/health")
async def health_check():
    try:
        from journey_engine.db.init import get_database
        db = get_database()
        await db.command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "timestamp": utc_now().isoformat(),
    }


app.include_router(engine_router, prefix="/api", tags=["journey-engine"])
app.include_router(journeys_router, prefix="/api", tags=["journeys"])
app.include_router(enrollments_router, prefix="/api", tags=["enrollments"])
app.include_router(tracking_router, prefix="/api", tags=["tracking"])
