# app/main.py
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from app.core.config import settings
from app.api.endpoints import resource, verify, intents
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

# Include the API router(s)
# The prefix ensures all routes start with /api/v1
app.include_router(resource.router, prefix=f"{settings.API_V1_STR}", tags=["resource"])
app.include_router(verify.router, prefix=f"{settings.API_V1_STR}", tags=["payments"])
app.include_router(intents.router, prefix=f"{settings.API_V1_STR}/intents", tags=["payments"])

# Malformed /verify bodies are answered with 400, like missing fields
app.add_exception_handler(RequestValidationError, verify.request_validation_handler)

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "network": settings.X402_NETWORK,
        "pay_to": settings.X402_PAY_TO_ADDRESS,
    }
