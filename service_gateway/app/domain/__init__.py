"""
Domain utilities for the Gateway Service.

Holds the request governance gate and the state it consults: maintenance
mode and same-origin validation.
"""

from .governance import GovernanceMiddleware, GovernanceSettings, RequestGovernor
from .maintenance import MaintenanceState
from .origin import validate_request_origin

__all__ = [
    "GovernanceMiddleware",
    "GovernanceSettings",
    "MaintenanceState",
    "RequestGovernor",
    "validate_request_origin",
]
