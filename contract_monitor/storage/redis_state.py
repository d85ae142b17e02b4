"""
Redis audit store.

Redis receives a write-behind copy of:
- Current samples per metric
- Rendered ranking payloads
- Monitor heartbeat

Nothing here is read back by the ranking path. Snapshots and the dedup
cache live in process; Redis is only for operators and dashboards.
"""

import json
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
import structlog

import redis

from contract_monitor.data.models import Metric, MetricSample

logger = structlog.get_logger(__name__)


class RedisAuditStore:
    """
    Redis-based audit sink.

    Key naming convention:
    - cm:samples:{metric} - Hash of instrument -> sample JSON
    - cm:rankings:{report} - Capped list of ranking payloads, newest first
    - cm:heartbeat:{process} - Process heartbeat
    """

    # Key prefixes
    PREFIX = "cm"
    SAMPLES_PREFIX = f"{PREFIX}:samples"
    RANKINGS_PREFIX = f"{PREFIX}:rankings"
    HEARTBEAT_PREFIX = f"{PREFIX}:heartbeat"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        sample_ttl_seconds: int = 3600,
        ranking_history: int = 50,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize Redis connection.

        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            password: Redis password (optional)
            socket_timeout: Socket timeout in seconds
            sample_ttl_seconds: Expiry of the per-metric sample hashes
            ranking_history: Ranking payloads kept per report
            client: Existing client (skips connection setup)
        """
        self.sample_ttl = sample_ttl_seconds
        self.ranking_history = ranking_history

        if client is not None:
            self.client = client
            return

        self.client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            socket_timeout=socket_timeout,
            decode_responses=True,
        )

        try:
            self.client.ping()
            logger.info("redis_connected", host=host, port=port, db=db)
        except redis.ConnectionError as e:
            logger.error("redis_connection_failed", error=str(e))
            raise

    # =========================================================================
    # Samples
    # =========================================================================

    def record_samples(self, metric: Metric, samples: Iterable[MetricSample]) -> int:
        """
        Replace the audit copy of a metric's current samples.

        Returns:
            Number of samples written
        """
        key = f"{self.SAMPLES_PREFIX}:{metric.value}"
        mapping = {s.instrument: json.dumps(s.to_dict()) for s in samples}
        if not mapping:
            return 0

        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=mapping)
        pipe.expire(key, self.sample_ttl)
        pipe.execute()

        logger.debug("samples_recorded", metric=metric.value, count=len(mapping))
        return len(mapping)

    def get_samples(self, metric: Metric) -> dict[str, dict]:
        """Audit copy of a metric's samples (instrument -> sample dict)."""
        key = f"{self.SAMPLES_PREFIX}:{metric.value}"
        return {instrument: json.loads(data) for instrument, data in self.client.hgetall(key).items()}

    # =========================================================================
    # Rankings
    # =========================================================================

    def record_ranking(self, report: str, payload: dict[str, Any]) -> None:
        """Push a ranking payload onto the report's capped history."""
        key = f"{self.RANKINGS_PREFIX}:{report}"
        data = dict(payload)
        data.setdefault("recorded_at", datetime.now(timezone.utc).isoformat())

        pipe = self.client.pipeline()
        pipe.lpush(key, json.dumps(data))
        pipe.ltrim(key, 0, self.ranking_history - 1)
        pipe.execute()

    def get_rankings(self, report: str, limit: int = 10) -> list[dict]:
        """Most recent ranking payloads for a report, newest first."""
        key = f"{self.RANKINGS_PREFIX}:{report}"
        return [json.loads(item) for item in self.client.lrange(key, 0, limit - 1)]

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def send_heartbeat(self, process_name: str = "contract_monitor", ttl_seconds: int = 300) -> None:
        """
        Send a heartbeat for a process.

        Args:
            process_name: Name of the process
            ttl_seconds: Time-to-live for the heartbeat
        """
        key = f"{self.HEARTBEAT_PREFIX}:{process_name}"
        data = {
            "process": process_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.client.setex(key, ttl_seconds, json.dumps(data))

    def check_heartbeat(self, process_name: str = "contract_monitor") -> Optional[datetime]:
        """Timestamp of the last heartbeat, or None if it expired."""
        data = self.client.get(f"{self.HEARTBEAT_PREFIX}:{process_name}")
        if data:
            return datetime.fromisoformat(json.loads(data)["timestamp"])
        return None

    def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
        logger.info("redis_connection_closed")
