import asyncio
import json
import logging
import uuid

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..models.gateway import QueryBody, QueryRequest, QueryResponse
from ..services.gateway import strip_retryable_marker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/query")


def _get_gateway(request: Request):
    gateway = request.app.state.gateway
    if not gateway:
        raise HTTPException(status_code=503, detail="Gateway not available")
    return gateway


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer ") and auth[7:]:
        return auth[7:]
    return None


def _to_query_request(request: Request, body: QueryBody) -> QueryRequest:
    if not body.query:
        raise HTTPException(status_code=400, detail="query is required")
    if not body.user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    return QueryRequest(
        query=body.query,
        user_id=body.user_id,
        session_id=body.session_id or f"session-{uuid.uuid4().hex}",
        request_id=body.request_id or f"req-{uuid.uuid4().hex}",
        token=_bearer_token(request),
        capability=body.capability,
        target_user_id=body.target_user_id,
    )


def _public(response: QueryResponse) -> dict:
    data = response.model_dump()
    data["error"] = strip_retryable_marker(response.error)
    return data


def _sse_event(name: str, data: dict | str) -> str:
    if isinstance(data, str):
        payload = data
    else:
        payload = json.dumps(data, ensure_ascii=False)
    return f"event: {name}\ndata: {payload}\n\n"


@router.post("")
async def query(request: Request, body: QueryBody):
    gateway = _get_gateway(request)
    query_request = _to_query_request(request, body)
    response = await gateway.handle_request_with_retry(query_request)
    return _public(response)


@router.post("/stream")
async def query_stream(request: Request, body: QueryBody):
    gateway = _get_gateway(request)
    query_request = _to_query_request(request, body)

    async def generator():
        queue: asyncio.Queue = asyncio.Queue()

        async def on_chunk(text: str) -> None:
            await queue.put(text)

        task = asyncio.create_task(gateway.handle_request_with_retry(query_request, on_chunk))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            yield _sse_event("chunk", {"content": chunk})

        try:
            response = task.result()
        except Exception as e:
            logger.error("Streaming query failed request=%s: %s", query_request.request_id, e)
            yield _sse_event("error", {
                "request_id": query_request.request_id,
                "error": "An error occurred while processing your request. Please try again.",
            })
            return

        if response.success:
            yield _sse_event("complete", _public(response))
        else:
            yield _sse_event("error", _public(response))

    return StreamingResponse(
        generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
