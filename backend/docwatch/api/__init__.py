from fastapi import APIRouter

from docwatch.api.rules import router as rules_router
from docwatch.api.tracking import router as tracking_router

router = APIRouter(prefix="/api", tags=["api"])
router.include_router(tracking_router)
router.include_router(rules_router)
