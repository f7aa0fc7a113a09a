import json
from typing import Optional

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from tripsalama.config import get_settings
from tripsalama.redis_client import get_redis

settings = get_settings()


def _cache_key(user_id: int, path: str, key: str) -> str:
    # scoped per caller and endpoint so two users cannot collide on a key
    return f"idempotency:{user_id}:{path}:{key}"


async def check_idempotency(request: Request, user_id: int) -> Optional[Response]:
    """
    Returns the cached Response if the Idempotency-Key was already used by
    this caller on this endpoint, otherwise None (proceed normally).
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    redis = await get_redis()
    cached = await redis.get(_cache_key(user_id, request.url.path, key))

    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(request: Request, user_id: int, status_code: int, body: dict) -> None:
    """Persist the response for the request's Idempotency-Key, if it sent one."""
    key = request.headers.get("Idempotency-Key")
    if not key:
        return
    redis = await get_redis()
    await redis.setex(
        _cache_key(user_id, request.url.path, key),
        settings.idempotency_ttl_seconds,
        json.dumps({"status_code": status_code, "body": jsonable_encoder(body)}),
    )
