"""Public config endpoint for the frontend (feature flags)."""
from fastapi import APIRouter

from atlas.config import settings

router = APIRouter()


@router.get("/config")
def get_config():
    """Return public config: project name and which providers are configured. No auth required."""
    return {
        "project_name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "providers": {
            "openai": settings.openai_enabled,
            "anthropic": settings.anthropic_enabled,
            "gemini": settings.gemini_enabled,
            "serper": bool(settings.SERPER_API_KEY),
            "open_register": settings.open_register_enabled,
        },
        "persist_debounce_seconds": settings.PERSIST_DEBOUNCE_SECONDS,
    }
