from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from zgproxy.api.deps import ContextDep
from zgproxy.errors import InvalidRequest
from zgproxy.schemas import CompletionResponse, ErrorBody
from zgproxy.utils.rate_limit import get_limiter

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

_ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    status: {"model": ErrorBody} for status in (400, 401, 402, 500, 503)
}


@router.post(
    "/chat/completions",
    response_model=CompletionResponse,
    responses=_ERROR_RESPONSES,
)
async def chat_completions(request: Request, context: ContextDep):
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Invalid request: body must be a JSON object", code="invalid_json")

    api_key = getattr(request.state, "api_key", None) or "public"
    async with get_limiter(api_key):
        result = await context.orchestrator.handle(body)

    if isinstance(result, CompletionResponse):
        return JSONResponse(content=result.model_dump())

    return StreamingResponse(
        result,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
