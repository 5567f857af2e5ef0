"""Read-only HTTP API over the Redis cache.

Every route maps the store's three-way answer onto the response envelope:

    Found   -> 200 {"code": 200, "success": true, "result": ...}
    Missing -> 404 {"code": 404, "success": true, "message": "not found"}
    Failed  -> 500 {"code": 500, "success": false, "message": "<error>"}

A store failure only fails the request at hand; the process keeps serving.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cache import CacheResponse, Failed, Found, Missing, RedisCache
from config import WebConfig, get_logger
from entities import BaseModel

logger = get_logger(service="web")


def _jsonable(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, BaseModel):
        return value.dict()
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def ok(result: Any) -> JSONResponse:  # noqa: ANN401
    return JSONResponse(status_code=200, content={"code": 200, "success": True, "result": _jsonable(result)})


def to_response(response: CacheResponse) -> JSONResponse:
    match response:
        case Found(value=value):
            return ok(value)
        case Missing():
            return JSONResponse(status_code=404, content={"code": 404, "success": True, "message": "not found"})
        case Failed(error=error):
            logger.error(f"Cache lookup failed: {error}")
            return JSONResponse(status_code=500, content={"code": 500, "success": False, "message": str(error)})
    raise TypeError(f"Unexpected cache response {response!r}")


def _cache(request: Request) -> RedisCache:
    return request.app.state.cache


def create_app(cache: Optional[RedisCache] = None, cfg: Optional[WebConfig] = None) -> FastAPI:
    """Build the API. Without an explicit `cache` one is opened from `cfg` at startup and closed at shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if cache is not None:
            app.state.cache = cache
            yield
            return
        app.state.cache = RedisCache.from_url((cfg or WebConfig()).redis_address)
        logger.debug("Redis client created")
        try:
            yield
        finally:
            await app.state.cache.close()

    app = FastAPI(title="slack-user-cache", lifespan=lifespan)
    if cache is not None:
        app.state.cache = cache

    @app.get("/slack/users")
    async def get_all_users(request: Request) -> JSONResponse:
        return to_response(await _cache(request).get_all_users())

    @app.get("/slack/user/id/{user_id}")
    async def get_user_by_id(user_id: str, request: Request) -> JSONResponse:
        return to_response(await _cache(request).get_user_by_id(user_id))

    @app.get("/slack/user/email/{email}")
    async def get_user_by_email(email: str, request: Request) -> JSONResponse:
        return to_response(await _cache(request).get_user_by_email(email))

    @app.get("/slack/user_groups")
    async def get_all_user_groups(request: Request) -> JSONResponse:
        return to_response(await _cache(request).get_all_user_groups())

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return ok("OK")

    return app


def serve(cfg: WebConfig) -> None:
    logger.info(f"Listening on {cfg.listen_address}")
    uvicorn.run(create_app(cfg=cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())
