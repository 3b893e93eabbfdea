from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from .config import settings
from .database import init_db
from .errors import MemoryManagerError
from .utils.litellm_logging import configure_litellm_logging
import logging
import os

# Configure logging
os.makedirs(os.path.dirname(settings.log_file) or ".", exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)
configure_litellm_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug
)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup"""
    logger.info("Initializing services...")
    init_db()
    if settings.secondary_configured:
        logger.info(f"Secondary API configured: {settings.secondary_api_model}")
    else:
        logger.info("No secondary API configured; recall agent disabled, extraction uses the primary model")
    if settings.embedding_configured:
        logger.info(f"Embedding pre-filter enabled: {settings.embedding_model} ({settings.embedding_dimensions}d)")
    logger.info("Application startup complete")


@app.exception_handler(MemoryManagerError)
async def memory_error_handler(request: Request, exc: MemoryManagerError):
    logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "memoryEnabled": settings.enabled,
    }


# Import and include routers
from .api import memory

app.include_router(memory.router, prefix="/api/memory", tags=["memory"])


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "9876"))
    uvicorn.run(app, host="0.0.0.0", port=port)
