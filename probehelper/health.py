"""
Health reports for the /healthz and /health/ready endpoints.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict
import psutil
from .logging import get_logger
from .probe.helper import ProbeHelper

logger = get_logger()

DISK_THRESHOLD_GB = 1.0
MEMORY_THRESHOLD_MB = 50.0


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _grade(available: float, threshold: float) -> str:
    if available < threshold:
        return "error"
    if available < threshold * 2:
        return "warning"
    return "ok"


class HealthChecker:
    """
    Builds the health reports of one probe helper.

    Liveness is the staleness of the last successful round trip: it is what
    tells the orchestrator the platform stopped delivering. Readiness covers
    the trigger backends and the host.
    """

    def __init__(self, helper: ProbeHelper, service_name: str = "probe-helper", version: str = "0.1.0"):
        self.helper = helper
        self.service_name = service_name
        self.version = version

    def liveness(self) -> Dict[str, Any]:
        return {
            **self.helper.liveness.report(),
            "service": self.service_name,
            "version": self.version,
            "pending": len(self.helper.pending),
            "timestamp": _utc_timestamp(),
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness of the helper.

        Not ready when any adapter fails its health check, the host is short
        on disk or memory, or the helper is shutting down.
        """
        checks: Dict[str, Dict[str, Any]] = {}
        for adapter in self.helper.adapters:
            healthy = await adapter.health_check()
            checks[type(adapter).__name__] = {"status": "ok" if healthy else "error"}

        checks["disk_space"] = self._host_check("disk", self._disk)
        checks["memory"] = self._host_check("memory", self._memory)
        if self.helper.pending.closed:
            checks["helper"] = {"status": "error", "reason": "shutting down"}

        ready = all(check["status"] != "error" for check in checks.values())
        return {
            "status": "ready" if ready else "not_ready",
            "service": self.service_name,
            "version": self.version,
            "timestamp": _utc_timestamp(),
            "checks": checks,
        }

    @staticmethod
    def _host_check(name: str, probe: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return probe()
        except (psutil.Error, OSError) as e:
            logger.warning("health_check_failed", check=name, error=str(e))
            return {"status": "error", "error": str(e)}

    @staticmethod
    def _disk() -> Dict[str, Any]:
        disk = psutil.disk_usage("/")
        available_gb = disk.free / (1024**3)
        return {
            "status": _grade(available_gb, DISK_THRESHOLD_GB),
            "available_gb": round(available_gb, 2),
            "used_percent": disk.percent,
        }

    @staticmethod
    def _memory() -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        available_mb = memory.available / (1024**2)
        return {
            "status": _grade(available_mb, MEMORY_THRESHOLD_MB),
            "available_mb": round(available_mb, 2),
            "used_percent": memory.percent,
        }
