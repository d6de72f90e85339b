from fastapi import APIRouter

from . import admin, analysis, auth, billing, dreams, setup, weekly_reports

router = APIRouter(prefix="/v1")
router.include_router(auth.router)
router.include_router(dreams.router)
router.include_router(analysis.router)
router.include_router(weekly_reports.router)
router.include_router(admin.router)
# checkout and the signed provider webhook
router.include_router(billing.router)
router.include_router(setup.router)
