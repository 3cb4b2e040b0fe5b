import redis.asyncio as redis
from worktrack.core.config import settings

_client = None


def get_redis():
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def use_redis(client) -> None:
    """Replace the shared client, e.g. with one built from another URL."""
    global _client
    _client = client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
