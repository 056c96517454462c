"""FastAPI application main file"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from atlas.config import settings
from atlas.core.database import init_db
from atlas.api.v1 import router as api_router
from atlas.services.grid_store import GridStore, get_grid_store, set_grid_store
from atlas.services.persistence_service import get_persistence_service, load_seed_verticals

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_store() -> GridStore:
    """Grid store loaded from the database, or from the seed file when empty"""
    persistence = get_persistence_service()
    verticals = persistence.load_verticals()
    store = GridStore(verticals, persistence)
    if not verticals:
        seed = load_seed_verticals(settings.seed_data_path)
        logger.info(f"Empty database, seeding {len(seed)} verticals from {settings.seed_data_path}")
        store.apply_remote_verticals(seed)
        persistence.save_verticals(seed)
    return store


# Initialize database and grid
init_db()
set_grid_store(build_store())


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Write out edits still waiting on the debounce
    await get_grid_store().flush()


# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Spreadsheet grid with formulas, linked sheets and row enrichment.",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"{settings.PROJECT_NAME} API",
        "version": settings.VERSION,
        "docs": "/api/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    store = get_grid_store()
    return {
        "status": "healthy",
        "version": settings.VERSION,
        "verticals": len(store.verticals),
        "enrichment_running": store.has_active_batch(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
