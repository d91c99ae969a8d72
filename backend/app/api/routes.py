from fastapi import APIRouter

from app.api.interactions import router as interactions_router
from app.api.members import router as members_router

router = APIRouter()

router.include_router(members_router, prefix="/members", tags=["members"])
router.include_router(interactions_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Anatomia API"}
