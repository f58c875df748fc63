"""Public-facing routes (APP_ROLE=public): health only, webhooks live in routes/."""

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "kiteintel"}
