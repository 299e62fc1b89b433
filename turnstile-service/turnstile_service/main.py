import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .config import TurnstileSettings
from .db.connection import OracleConnectionManager
from .db.kv_store import OracleKeyValueStore
from .db.memory_store import InMemoryKeyValueStore
from .db.schema import init_schema
from .services.gateway import Gateway
from .services.identity_service import IdentityService
from .services.policy_service import PolicyService
from .services.session_service import SessionStore
from .transport.client import InferenceClient
from .api import api_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

OPEN_PATHS = ("/api/health", "/api/query")


def _is_open_path(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in OPEN_PATHS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = TurnstileSettings()
    app.state.settings = settings

    conn_mgr = None
    pool = None
    if settings.store_backend == "oracle":
        conn_mgr = OracleConnectionManager(settings)
        try:
            pool = await conn_mgr.create_pool()
            logger.info("Oracle connection pool created (min=%d, max=%d)",
                        settings.oracle_pool_min, settings.oracle_pool_max)
        except Exception as e:
            logger.error("Failed to create Oracle connection pool: %s", e)
            pool = None
        store = OracleKeyValueStore(pool) if pool else None
    else:
        store = InMemoryKeyValueStore()
        logger.info("Using in-memory store; records do not survive a restart")
    app.state.pool = pool
    app.state.store = store

    session_store = SessionStore(store, settings) if store else None
    policy_service = PolicyService(store, settings) if store else None
    identity_service = IdentityService(settings)
    inference_client = InferenceClient(
        settings.inference_base_url,
        settings.invocation_timeout_ms,
        api_key=settings.inference_api_key,
    )
    gateway = (
        Gateway(identity_service, policy_service, session_store, inference_client, settings)
        if store else None
    )

    app.state.session_store = session_store
    app.state.policy_service = policy_service
    app.state.identity_service = identity_service
    app.state.inference_client = inference_client
    app.state.gateway = gateway

    if settings.auto_init and pool:
        try:
            result = await init_schema(pool)
            logger.info("Auto-init schema: %s", result)
        except Exception as e:
            logger.warning("Auto-init failed (run POST /api/init manually): %s", e)

    yield

    await inference_client.aclose()
    logger.info("Inference client closed")
    if pool:
        await conn_mgr.close_pool()
        logger.info("Oracle connection pool closed")


app = FastAPI(
    title="Turnstile Service",
    version="0.1.0",
    description="Admission control, session memory and resilient invocation for an inference service",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class BearerTokenMiddleware(BaseHTTPMiddleware):
    """Optional service token for admin endpoints.

    When TURNSTILE_SERVICE_TOKEN is set, every request outside the health and
    query endpoints must include a matching Authorization: Bearer <token>
    header. Query endpoints carry end-user tokens in the same header.
    When not set, all requests are allowed (local dev mode).
    """

    async def dispatch(self, request: Request, call_next):
        token = request.app.state.settings.turnstile_service_token
        if token and not _is_open_path(request.url.path):
            auth = request.headers.get("authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != token:
                return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
        return await call_next(request)


app.add_middleware(BearerTokenMiddleware)

app.include_router(api_router)


if __name__ == "__main__":
    import uvicorn

    settings = TurnstileSettings()
    uvicorn.run(
        "turnstile_service.main:app",
        host="0.0.0.0",
        port=settings.turnstile_service_port,
        reload=True,
    )
