"""
Process-wide maintenance mode switch.
"""

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.logging import get_logger

DEFAULT_MAINTENANCE_MESSAGE = "VIVK is currently under maintenance. We'll be back shortly."


class MaintenanceState:
    """Maintenance flag shared by the governance gate and the admin routes."""

    def __init__(self, enabled: bool = False, message: str = DEFAULT_MAINTENANCE_MESSAGE):
        self._lock = threading.Lock()
        self._enabled = enabled
        self._message = message
        self._estimated_time: Optional[str] = None
        self._changed_by: Optional[str] = None
        self._changed_at: Optional[datetime] = None
        self.logger = get_logger("gateway.maintenance")

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def message(self) -> str:
        return self._message

    def set(self, enabled: bool, message: Optional[str] = None,
            estimated_time: Optional[str] = None, changed_by: Optional[str] = None) -> Dict[str, Any]:
        """Toggle maintenance mode; a missing message keeps the previous one."""
        with self._lock:
            self._enabled = enabled
            if message:
                self._message = message
            self._estimated_time = estimated_time
            self._changed_by = changed_by
            self._changed_at = datetime.now(timezone.utc)
            snapshot = self._snapshot()

        self.logger.warning(
            "Maintenance mode changed",
            enabled=enabled,
            message=self._message,
            estimated_time=estimated_time,
            changed_by=changed_by
        )
        return snapshot

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "message": self._message,
            "estimated_time": self._estimated_time,
            "changed_by": self._changed_by,
            "changed_at": self._changed_at.isoformat() if self._changed_at else None,
        }
