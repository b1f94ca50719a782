import logging
from pathlib import Path

# Load environment variables (ensure we load backend/.env regardless of where the app is started)
from dotenv import load_dotenv, find_dotenv

_found_env = find_dotenv(filename=".env")
if not _found_env:
    # Fallback to backend/.env relative to this file
    _found_env = str(Path(__file__).resolve().parents[1] / ".env")
load_dotenv(_found_env)

# Now import FastAPI and other modules after environment is loaded
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eduaccess.config import settings
from eduaccess.errors import EduAccessError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Educational resource sharing: uploads, moderation, downloads and school statistics",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EduAccessError)
async def eduaccess_error_handler(request: Request, exc: EduAccessError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Import and register routers
from eduaccess.routers import auth, users, resources, moderation, schools, downloads, files

app.include_router(auth.router, prefix=settings.API_PREFIX)
app.include_router(users.router, prefix=settings.API_PREFIX)
app.include_router(resources.router, prefix=settings.API_PREFIX)
app.include_router(moderation.router, prefix=settings.API_PREFIX)
app.include_router(schools.router, prefix=settings.API_PREFIX)
app.include_router(downloads.router, prefix=settings.API_PREFIX)
app.include_router(files.router, prefix=settings.API_PREFIX)


# Root endpoint
@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME} API"}

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "storage_driver": settings.STORAGE_DRIVER}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("eduaccess.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
