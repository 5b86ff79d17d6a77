from fastapi import APIRouter

from zgproxy.api.routes import completions

api_router = APIRouter()
api_router.include_router(completions.router)
