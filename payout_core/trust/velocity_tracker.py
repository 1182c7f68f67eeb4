"""
Redis-based velocity counters for trust signals.

Counts charges per device, payer and IP address over fixed hourly and
daily windows.
"""
import time
from typing import Dict, List, Optional, Tuple

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class VelocityTracker:
    """
    Redis pipeline backed velocity tracking.

    Each dimension keeps a count and an amount counter per window; keys
    expire with their window.
    """

    WINDOW_1HR = 3600
    WINDOW_24HR = 86400
    WINDOWS = (WINDOW_1HR, WINDOW_24HR)

    def __init__(self, redis_client: Redis, prefix: str = "velocity"):
        self.redis = redis_client
        self.prefix = prefix

    def _dimensions(
        self, device_fingerprint: Optional[str], payer_id: Optional[str], ip_address: Optional[str]
    ) -> List[Tuple[str, str]]:
        dimensions = []
        if device_fingerprint:
            dimensions.append(("device", f"{self.prefix}:device:{device_fingerprint}"))
        if payer_id:
            dimensions.append(("payer", f"{self.prefix}:payer:{payer_id}"))
        if ip_address:
            dimensions.append(("ip", f"{self.prefix}:ip:{ip_address}"))
        return dimensions

    async def track_charge(
        self,
        amount_cents: int,
        device_fingerprint: Optional[str] = None,
        payer_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """
        Record one charge against every known dimension.

        Args:
            amount_cents: Charge amount
            device_fingerprint: Device that initiated the charge
            payer_id: Paying user
            ip_address: Originating IP address
        """
        pipe = self.redis.pipeline()
        for _, base in self._dimensions(device_fingerprint, payer_id, ip_address):
            for window in self.WINDOWS:
                count_key = f"{base}:count:{window}"
                pipe.incr(count_key)
                pipe.expire(count_key, window)

                amount_key = f"{base}:amount:{window}"
                pipe.incrby(amount_key, amount_cents)
                pipe.expire(amount_key, window)

        start_time = time.perf_counter()
        await pipe.execute()
        logger.debug(
            "velocity_tracked",
            latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )

    async def get_velocity(
        self,
        device_fingerprint: Optional[str] = None,
        payer_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Read the current counters.

        Returns:
            Dict[str, int]: ``<dimension>_count_1hr``, ``<dimension>_amount_24hr`` etc.
        """
        dimensions = self._dimensions(device_fingerprint, payer_id, ip_address)
        if not dimensions:
            return {}

        pipe = self.redis.pipeline()
        for _, base in dimensions:
            for window in self.WINDOWS:
                pipe.get(f"{base}:count:{window}")
                pipe.get(f"{base}:amount:{window}")

        results = await pipe.execute()

        velocity: Dict[str, int] = {}
        idx = 0
        for name, _ in dimensions:
            for window, label in zip(self.WINDOWS, ("1hr", "24hr")):
                velocity[f"{name}_count_{label}"] = int(results[idx] or 0)
                velocity[f"{name}_amount_{label}"] = int(results[idx + 1] or 0)
                idx += 2
        return velocity
