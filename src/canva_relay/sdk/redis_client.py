from redis.asyncio import Redis

from canva_relay.config import Settings


class RedisClientFactory:

    @staticmethod
    def create(settings: Settings) -> Redis:
        """
        Build the shared async client. Connections are opened lazily on
        first use, so this never blocks or fails at startup.
        """
        if settings.redis_url:
            return Redis.from_url(
                settings.redis_url,
                password=settings.redis_password,
                decode_responses=True,
                max_connections=35,
            )
        return Redis(
            host=settings.redis_host or "localhost",
            port=settings.redis_port,
            password=settings.redis_password,
            decode_responses=True,
            max_connections=35,
        )
