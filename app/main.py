from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import logging

# Import database components
from app.database.database import engine, Base

# Import middleware
from app.common.middleware import RequestLogMiddleware, SecurityHeadersMiddleware

# Import routers
from app.modules.fiscal.router import router as fiscal_router
from app.modules.fiscal.exceptions import FiscalError

# Import models for table creation
import app.modules.fiscal.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Fiscal Gateway API",
    description="Multi-tenant issuance and reconciliation of Brazilian fiscal documents through Focus NFe",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLogMiddleware)


@app.exception_handler(FiscalError)
async def fiscal_error_handler(request: Request, exc: FiscalError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.category} error: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path}: {exc.category} error: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "error": "Invalid request",
            "category": "validation",
            "details": exc.errors(),
        })
    )


# Include routers
app.include_router(fiscal_router)

# Create database tables (no migrations; production schemas are managed externally)
if settings.ENVIRONMENT != "production":
    Base.metadata.create_all(bind=engine)

@app.get("/")
async def read_root():
    return {
        "message": "Fiscal Gateway API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}

@app.on_event("startup")
async def startup_event():
    logger.info("Fiscal Gateway API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Webhook signature check: {'on' if settings.FOCUSNFE_WEBHOOK_SECRET else 'off'}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Fiscal Gateway API shutting down...")
