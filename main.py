"""
Row Enrichment API
AI enrichment, provider batch, email finder and formula jobs over table rows
"""
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

# Local imports
from config import settings
from database import init_db, DATABASE_AVAILABLE
from routers import enrichment_router, batch_router, lookups_router
from services.batch_provider import azure_batch_service

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Setup logger
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Create FastAPI app
app = FastAPI(
    title="Row Enrichment API",
    description="Background AI enrichment jobs for table rows",
    version=VERSION
)

# CORS middleware - Use configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(enrichment_router)
app.include_router(batch_router)
app.include_router(lookups_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    try:
        init_db()
        logger.info("[OK] Database tables created successfully")
    except Exception as e:
        logger.error(f"[WARN] Database initialization failed: {e}")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "service": "row-enrichment-api", "version": VERSION}


@app.get("/api/config")
async def get_config():
    """Which providers are configured"""
    return {
        "azure_openai_configured": bool(settings.AZURE_OPENAI_ENDPOINT and settings.AZURE_OPENAI_API_KEY),
        "gemini_configured": bool(settings.GEMINI_API_KEY or settings.GOOGLE_CLOUD_PROJECT),
        "azure_batch_configured": azure_batch_service.is_configured(),
        "email_finder_configured": bool(settings.MAILTESTER_NINJA_API_KEY),
        "database_available": DATABASE_AVAILABLE,
        "version": VERSION
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
