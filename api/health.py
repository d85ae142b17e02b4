"""
Health API for the contract monitor.

Read-only endpoints served from inside the monitor's event loop:
- GET /health: liveness, uptime and sampled instrument counts
- GET /status: per-metric snapshot status, last cycle reports, dedup cache size
"""

import contextlib
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
import structlog
import uvicorn

from contract_monitor import __version__

logger = structlog.get_logger(__name__)


def get_monitor(request: Request) -> Any:
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Monitor not attached")
    return monitor


def create_health_app(monitor: Optional[Any] = None) -> FastAPI:
    """
    Build the health API.

    Args:
        monitor: Object exposing get_status() (normally a ContractMonitor)
    """
    app = FastAPI(
        title="Contract Monitor",
        description="Health and status of the contract monitor",
        version=__version__,
    )
    app.state.monitor = monitor

    @app.get("/health")
    async def health_check(monitor=Depends(get_monitor)):
        """Liveness summary."""
        status = monitor.get_status()
        return {
            "status": "healthy" if status.get("running") else "stopped",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": status.get("uptime_seconds"),
            "instruments": status.get("instruments"),
            "sampled": {
                metric: info.get("instruments")
                for metric, info in status.get("snapshots", {}).items()
            },
        }

    @app.get("/status")
    async def get_status(monitor=Depends(get_monitor)):
        """Full monitor status."""
        try:
            status = monitor.get_status()
        except Exception as e:
            logger.error("status_fetch_error", error=str(e))
            raise HTTPException(status_code=500, detail=str(e))

        return {**status, "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


class HealthServer(uvicorn.Server):
    """
    uvicorn server embedded in the monitor's event loop.

    Signal handling stays with the monitor's shutdown handler.
    """

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 3000):
        super().__init__(uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False))

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    async def run_until_cancelled(self) -> None:
        logger.info("health_server_starting", host=self.config.host, port=self.config.port)
        try:
            await self.serve()
        finally:
            self.should_exit = True
            logger.info("health_server_stopped")
