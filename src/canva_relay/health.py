import time

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from canva_relay.config import Settings
from canva_relay.logging_util import get_logger
from canva_relay.models import HealthProbe
from canva_relay.persistence import PersistenceProvider, StoreError
from canva_relay.pkce import random_id


logger = get_logger(__name__)

HEALTH_SCOPE = "relay_health"
PROBE_TTL_SECONDS = 30


def build_health_router(settings: Settings, probes: PersistenceProvider[HealthProbe]) -> APIRouter:
    router = APIRouter(prefix="/health")

    @router.get("/env")
    async def env():
        """Which configuration values are present. Never returns the values."""
        return settings.presence()

    @router.get("/kv")
    async def kv():
        """Store self-test: write a probe, read it back, delete it."""
        if not settings.store_configured:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"ok": False, "reason": "Session store not configured"},
            )

        key = random_id("kv_selftest_")
        wrote = HealthProbe(t=time.time())
        try:
            await probes.set(key, wrote, ttl_in_sec=PROBE_TTL_SECONDS)
            read_back = await probes.get(key)
            await probes.delete(key)
        except StoreError as e:
            logger.error(f"Store self-test failed: {e}")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"ok": False, "error": str(e)},
            )

        return {
            "ok": read_back == wrote,
            "wrote": wrote.model_dump(),
            "read_back": read_back.model_dump() if read_back else None,
        }

    return router
