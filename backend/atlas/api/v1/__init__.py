"""API v1 routes"""
from fastapi import APIRouter

from atlas.api.v1 import config, enrichment, imports, sheets, verticals

router = APIRouter()

# Include sub-routers
router.include_router(config.router, tags=["config"])
router.include_router(verticals.router, tags=["verticals"])
router.include_router(sheets.router, tags=["sheets"])
router.include_router(enrichment.router, tags=["enrichment"])
router.include_router(imports.router, prefix="/imports", tags=["imports"])
