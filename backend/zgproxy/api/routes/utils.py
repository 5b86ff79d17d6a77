from datetime import datetime, timezone

from fastapi import APIRouter

from zgproxy.core.config import settings

router = APIRouter(tags=["utils"])


@router.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.PROJECT_NAME,
    }


@router.get("/")
async def root():
    return {
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "description": "OpenAI-compatible proxy for 0G Compute Network",
        "endpoints": {
            "health": "GET /health",
            "chat": f"POST {settings.API_V1_STR}/chat/completions",
        },
    }
