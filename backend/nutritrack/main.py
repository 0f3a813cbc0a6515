from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from nutritrack.api import consumption
from nutritrack.core.config import settings
from nutritrack.core.errors import AppError
from nutritrack.models.database import Base, engine
import logging

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: make sure tables exist; schema changes go through alembic
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")

    yield

    engine.dispose()
    logger.info("Database engine disposed")

app = FastAPI(
    title="NutriTrack API",
    description="Consumption tracking and nutrition analytics",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]
    return JSONResponse(status_code=400, content={
        "success": False,
        "error": {"type": "ValidationError", "message": "Invalid request", "details": details},
    })


# Include routers
app.include_router(consumption.router, prefix="/api")


@app.get("/")
def root():
    return {
        "name": "NutriTrack API",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "environment": settings.environment
    }
