import redis.asyncio as redis

from config import settings

redis_client = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    socket_timeout=settings.STORE_TIMEOUT_SECONDS,
    socket_connect_timeout=settings.STORE_TIMEOUT_SECONDS,
)
