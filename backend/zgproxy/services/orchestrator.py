import asyncio
import json
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Union

import httpx
import structlog
from pydantic import ValidationError

from zgproxy.errors import (
    GatewayError,
    InsufficientBalance,
    InvalidRequest,
    ProviderError,
    StreamingError,
)
from zgproxy.observability import PROVIDER_RESOLUTIONS, UPSTREAM_LATENCY, UPSTREAM_REQUESTS
from zgproxy.providers.base import ProviderInfo
from zgproxy.providers.resolver import ProviderResolver
from zgproxy.schemas import CompletionRequest, CompletionResponse
from zgproxy.services.codec import DialectCodec
from zgproxy.services.frames import terminal_frame
from zgproxy.services.reshaper import Granularity, StreamReshaper

logger = structlog.get_logger()


@dataclass
class UpstreamCall:
    provider: ProviderInfo
    request: CompletionRequest  # model already rewritten to the provider's id
    body: Dict[str, Any]
    headers: Dict[str, str]


class CompletionOrchestrator:
    """Validates a chat-completion request, routes it to a 0G provider and
    translates whatever comes back into the OpenAI dialect."""

    def __init__(
        self,
        resolver: ProviderResolver,
        client: httpx.AsyncClient,
        codec: Optional[DialectCodec] = None,
        *,
        granularity: Granularity = Granularity.WORD,
        stream_upstream: bool = True,
        stream_timeout: Optional[float] = None,
    ):
        self.resolver = resolver
        self.client = client
        self.codec = codec or DialectCodec()
        self.granularity = granularity
        self.stream_upstream = stream_upstream
        self.stream_timeout = stream_timeout

    def validate(self, body: Any) -> CompletionRequest:
        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            raise InvalidRequest("Invalid request: messages array is required", code="invalid_messages")
        if not body.get("model"):
            raise InvalidRequest("Invalid request: model is required", code="missing_model")
        try:
            return CompletionRequest.model_validate(body)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(p) for p in first["loc"])
            raise InvalidRequest(f"Invalid request: {location}: {first['msg']}") from e

    async def handle(self, body: Any) -> Union[CompletionResponse, AsyncIterator[str]]:
        req = self.validate(body)
        logger.info("Chat completion request", model=req.model, stream=req.stream)
        if req.stream:
            return await self.stream(req)
        return await self.complete(req)

    async def _prepare(self, req: CompletionRequest) -> UpstreamCall:
        try:
            provider = await self.resolver.resolve(req.model)
        except Exception:
            PROVIDER_RESOLUTIONS.labels("error").inc()
            raise
        PROVIDER_RESOLUTIONS.labels("ok").inc()
        logger.info(
            "Using provider",
            address=provider.address,
            endpoint=provider.endpoint,
            model=provider.model,
        )

        outbound = req.model_copy(update={"model": provider.model})
        body = self.codec.encode_request(outbound)
        content = json.dumps(body["messages"], separators=(",", ":"), ensure_ascii=False)
        auth_headers = await self.resolver.require_broker().get_auth_headers(provider.address, content)
        headers = {"Content-Type": "application/json", **auth_headers}
        return UpstreamCall(provider=provider, request=outbound, body=body, headers=headers)

    @staticmethod
    def _upstream_error(status: int, text: str) -> GatewayError:
        logger.error("0G provider error", status=status, body=text[:500])
        if status == 402:
            return InsufficientBalance()
        return ProviderError(status, text)

    async def complete(self, req: CompletionRequest) -> CompletionResponse:
        call = await self._prepare(req)
        url = call.provider.completions_url
        logger.info("Sending request", url=url)

        start = time.perf_counter()
        try:
            response = await self.client.post(url, headers=call.headers, json=call.body)
        except httpx.HTTPError as e:
            UPSTREAM_REQUESTS.labels("network_error", "false").inc()
            raise ProviderError(502, f"upstream request failed: {e}") from e
        UPSTREAM_LATENCY.labels("false").observe(time.perf_counter() - start)
        UPSTREAM_REQUESTS.labels(str(response.status_code), "false").inc()

        if not response.is_success:
            raise self._upstream_error(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        logger.debug("0G response received", payload=payload)

        result = self.codec.decode_response(payload, call.request.model, call.request.messages)
        logger.info("Chat completion successful", id=result.id)
        return result

    async def stream(self, req: CompletionRequest) -> AsyncIterator[str]:
        """Open the upstream stream and return the client-facing frame iterator.

        Everything that can still become a structured error response (provider
        resolution, upstream status, the first frame) happens before this
        returns.
        """
        call = await self._prepare(req)
        body = dict(call.body)
        if self.stream_upstream:
            body["stream"] = True

        url = call.provider.completions_url
        logger.info("Sending streaming request", url=url)
        request = self.client.build_request("POST", url, headers=call.headers, json=body)

        start = time.perf_counter()
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            UPSTREAM_REQUESTS.labels("network_error", "true").inc()
            raise ProviderError(502, f"upstream request failed: {e}") from e
        UPSTREAM_LATENCY.labels("true").observe(time.perf_counter() - start)
        UPSTREAM_REQUESTS.labels(str(response.status_code), "true").inc()

        if not response.is_success:
            try:
                await response.aread()
                text = response.text
            finally:
                await response.aclose()
            raise self._upstream_error(response.status_code, text)

        reshaper = StreamReshaper(
            self.codec,
            model=call.request.model,
            request_messages=call.request.messages,
            granularity=self.granularity,
        )
        frames = reshaper.reshape(response.headers.get("content-type"), response.aiter_bytes())
        frames = self._with_deadline(frames, reshaper)

        try:
            first = await anext(frames)
        except StopAsyncIteration:
            first = None
        except BaseException as e:
            await frames.aclose()
            await response.aclose()
            if isinstance(e, Exception):
                raise StreamingError(f"Streaming error: {e}") from e
            raise

        return self._forward(first, frames, response)

    async def _forward(
        self,
        first: Optional[str],
        frames: AsyncIterator[str],
        response: httpx.Response,
    ) -> AsyncIterator[str]:
        try:
            if first is not None:
                yield first
            async with aclosing(frames) as rest:
                async for frame in rest:
                    yield frame
        except Exception as e:
            # status line is already sent, all that is left is dropping the connection
            logger.error("Error during streaming", error=str(e))
            raise
        finally:
            await response.aclose()

    async def _with_deadline(self, frames: AsyncIterator[str], reshaper: StreamReshaper) -> AsyncIterator[str]:
        async with aclosing(frames):
            if self.stream_timeout is None:
                async for frame in frames:
                    yield frame
                return

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.stream_timeout
            while True:
                try:
                    frame = await asyncio.wait_for(anext(frames), max(deadline - loop.time(), 0))
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    logger.error("Streaming timeout exceeded", timeout_seconds=self.stream_timeout)
                    yield reshaper.closing_frame("error")
                    yield terminal_frame()
                    return
                yield frame
