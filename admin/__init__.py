"""
Admin Package.

============================================================
PURPOSE
============================================================
Configuration surface of the health engine:

- service: CollectorAdminService (validation + operations)
- api: aiohttp routes in front of the service

============================================================
"""

from .service import (
    MIN_INTERVAL_SECONDS,
    CollectorAdminService,
    apply_rule_update,
    validate_config_update,
)
from .api import AdminAPI, create_admin_app, setup_admin_routes


__all__ = [
    "MIN_INTERVAL_SECONDS",
    "CollectorAdminService",
    "apply_rule_update",
    "validate_config_update",
    "AdminAPI",
    "create_admin_app",
    "setup_admin_routes",
]
