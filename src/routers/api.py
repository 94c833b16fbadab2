from fastapi import APIRouter

from routers import bridge, tag

router = APIRouter()

# include sub-routers
router.include_router(tag.router)
router.include_router(bridge.router)
