from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import billing, webhooks

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Plan Catalog & Subscription API")
    await database.connect()

    from services.billing_config import load_billing_config
    from services.billing_services import BillingServices, configure_billing_services
    from services.catalog_validator import validate_catalog

    services = configure_billing_services(BillingServices(load_billing_config()))
    if not services.config.access_token:
        logger.error("SQUARE_ACCESS_TOKEN is not set. Subscription and payment calls will fail.")
    if not services.config.webhook_signature_key:
        logger.error("SQUARE_WEBHOOK_SIGNATURE_KEY is not set. Square webhooks will be rejected.")
    try:
        validate_catalog(services.catalog)
    except Exception as e:
        logger.warning("Plan catalog check failed: %s", e)

    yield

    # Shutdown
    logger.info("Shutting down Plan Catalog & Subscription API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Plan Catalog & Subscription API",
    description="Square subscription lifecycle, plan catalog and webhook ingest",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(billing.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
