"""
Admin HTTP API Endpoints.

============================================================
PURPOSE
============================================================
aiohttp front for CollectorAdminService.

STATUS CODES:
- 400: invalid configuration or request body
- 404: unknown collector, rule or exception
- 409: duplicate exception, or a trigger rejected because
       the collector is running or disabled
- 500: anything else

============================================================
"""

import json
import logging
from dataclasses import is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from aiohttp import web

from core.clock import ensure_utc
from core.exceptions import (
    ConfigurationError,
    DuplicateExceptionError,
    HealthEngineError,
    NotFoundError,
)

from .service import CollectorAdminService


logger = logging.getLogger(__name__)


# ============================================================
# JSON ENCODER
# ============================================================

class AdminEncoder(json.JSONEncoder):
    """JSON encoder for admin payloads."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if is_dataclass(obj) and hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data, cls=AdminEncoder, indent=2),
        status=status,
        content_type="application/json",
    )


def error_response(error: Exception) -> web.Response:
    """Map an exception to a JSON error response."""
    if isinstance(error, DuplicateExceptionError):
        status = 409
    elif isinstance(error, ConfigurationError):
        status = 400
    elif isinstance(error, NotFoundError):
        status = 404
    else:
        status = 500

    if isinstance(error, HealthEngineError):
        body = {"status": "error", "error": error.message, "type": type(error).__name__}
        if status != 500:
            body["context"] = error.context
    else:
        body = {"status": "error", "error": str(error), "type": type(error).__name__}

    if status == 500:
        logger.error(f"Admin API error: {error}", exc_info=error)
    return json_response(body, status=status)


# ============================================================
# REQUEST HELPERS
# ============================================================

async def _json_body(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise ConfigurationError(f"Request body is not valid JSON: {e}") from e


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Query parameter {name} must be an integer", config_key=name, actual_value=raw) from e


def _int_path(request: web.Request, name: str) -> int:
    raw = request.match_info[name]
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Path parameter {name} must be an integer", config_key=name, actual_value=raw) from e


def _parse_datetime(raw: Optional[str], field_name: str) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))
    except ValueError as e:
        raise ConfigurationError(
            f"{field_name} must be an ISO-8601 timestamp",
            config_key=field_name,
            actual_value=raw,
        ) from e


def _operator(request: web.Request, body: Optional[Dict[str, Any]] = None) -> Optional[str]:
    if body and body.get("updated_by"):
        return str(body["updated_by"])
    return request.headers.get("X-Operator")


# ============================================================
# API HANDLERS
# ============================================================

class AdminAPI:
    """HTTP API for the configuration surface."""

    def __init__(self, service: CollectorAdminService):
        self._service = service

    # --------------------------------------------------------
    # HEALTH CHECK
    # --------------------------------------------------------

    async def health(self, request: web.Request) -> web.Response:
        """GET /api/health"""
        return json_response({
            "status": "ok",
            "timestamp": self._service.clock.now().isoformat(),
            "service": "health-engine",
        })

    # --------------------------------------------------------
    # COLLECTOR ENDPOINTS
    # --------------------------------------------------------

    async def list_collectors(self, request: web.Request) -> web.Response:
        """GET /api/collectors"""
        try:
            configs = await self._service.list_configs()
            return json_response({"status": "ok", "data": [c.to_dict() for c in configs]})
        except Exception as e:
            return error_response(e)

    async def get_summary(self, request: web.Request) -> web.Response:
        """GET /api/collectors/summary"""
        try:
            return json_response({"status": "ok", "data": await self._service.get_summary()})
        except Exception as e:
            return error_response(e)

    async def get_collector(self, request: web.Request) -> web.Response:
        """GET /api/collectors/{name}"""
        try:
            config = await self._service.get_config(request.match_info["name"])
            return json_response({"status": "ok", "data": config.to_dict()})
        except Exception as e:
            return error_response(e)

    async def update_collector(self, request: web.Request) -> web.Response:
        """
        PATCH /api/collectors/{name}

        Body: any of enabled, interval_seconds, weight,
        parallel_degree, timeout_seconds.
        """
        try:
            body = await _json_body(request)
            if not isinstance(body, dict):
                raise ConfigurationError("Request body must be a JSON object")
            config = await self._service.update_config(
                request.match_info["name"],
                enabled=body.get("enabled"),
                interval_seconds=body.get("interval_seconds"),
                weight=body.get("weight"),
                parallel_degree=body.get("parallel_degree"),
                timeout_seconds=body.get("timeout_seconds"),
                updated_by=_operator(request, body),
            )
            return json_response({"status": "ok", "data": config.to_dict()})
        except Exception as e:
            return error_response(e)

    async def trigger_collector(self, request: web.Request) -> web.Response:
        """
        POST /api/collectors/{name}/trigger

        202 when a run started, 409 when rejected.
        """
        try:
            name = request.match_info["name"]
            outcome = await self._service.trigger_run(name, triggered_by=_operator(request))
            return json_response(
                {
                    "status": "ok" if outcome.accepted else "rejected",
                    "collector_name": name,
                    "outcome": outcome.value,
                },
                status=202 if outcome.accepted else 409,
            )
        except Exception as e:
            return error_response(e)

    async def get_logs(self, request: web.Request) -> web.Response:
        """GET /api/collectors/{name}/logs?limit=20"""
        try:
            logs = await self._service.recent_logs(
                request.match_info["name"],
                limit=_int_param(request, "limit", 20),
            )
            return json_response({"status": "ok", "data": [l.to_dict() for l in logs]})
        except Exception as e:
            return error_response(e)

    # --------------------------------------------------------
    # RULE ENDPOINTS
    # --------------------------------------------------------

    async def get_rules(self, request: web.Request) -> web.Response:
        """GET /api/collectors/{name}/rules"""
        try:
            rules = await self._service.get_rules(request.match_info["name"])
            return json_response({"status": "ok", "data": [r.to_dict() for r in rules]})
        except Exception as e:
            return error_response(e)

    async def update_rules(self, request: web.Request) -> web.Response:
        """PUT /api/collectors/{name}/rules with a list of {id, ...changes}"""
        try:
            body = await _json_body(request)
            if not isinstance(body, list):
                raise ConfigurationError("Request body must be a JSON list of rule updates")
            rules = await self._service.update_rules(request.match_info["name"], body)
            return json_response({"status": "ok", "data": [r.to_dict() for r in rules]})
        except Exception as e:
            return error_response(e)

    async def reset_rules(self, request: web.Request) -> web.Response:
        """POST /api/collectors/{name}/rules/reset"""
        try:
            rules = await self._service.reset_rules(request.match_info["name"])
            return json_response({"status": "ok", "data": [r.to_dict() for r in rules]})
        except Exception as e:
            return error_response(e)

    async def update_rule(self, request: web.Request) -> web.Response:
        """PATCH /api/rules/{rule_id}"""
        try:
            body = await _json_body(request)
            if not isinstance(body, dict):
                raise ConfigurationError("Request body must be a JSON object")
            rule = await self._service.update_rule(_int_path(request, "rule_id"), body)
            return json_response({"status": "ok", "data": rule.to_dict()})
        except Exception as e:
            return error_response(e)

    # --------------------------------------------------------
    # EXCEPTION ENDPOINTS
    # --------------------------------------------------------

    async def get_exception_types(self, request: web.Request) -> web.Response:
        """GET /api/collectors/{name}/exception-types"""
        try:
            types = self._service.supported_exception_types(request.match_info["name"])
            return json_response({"status": "ok", "data": types})
        except Exception as e:
            return error_response(e)

    async def list_exceptions(self, request: web.Request) -> web.Response:
        """GET /api/exceptions?collector=Backups"""
        try:
            data = await self._service.list_exceptions(request.query.get("collector"))
            return json_response({"status": "ok", "data": data})
        except Exception as e:
            return error_response(e)

    async def add_exception(self, request: web.Request) -> web.Response:
        """
        POST /api/exceptions

        Body: collector_name, server_name, exception_type?,
        reason?, expires_at? (ISO-8601), created_by?
        """
        try:
            body = await _json_body(request)
            if not isinstance(body, dict):
                raise ConfigurationError("Request body must be a JSON object")
            for key in ("collector_name", "server_name"):
                if not body.get(key):
                    raise ConfigurationError(f"{key} is required", config_key=key)

            created = await self._service.add_exception(
                collector_name=body["collector_name"],
                server_name=body["server_name"],
                exception_type=body.get("exception_type"),
                reason=body.get("reason"),
                expires_at=_parse_datetime(body.get("expires_at"), "expires_at"),
                created_by=body.get("created_by") or request.headers.get("X-Operator"),
            )
            return json_response({"status": "ok", "data": created.to_dict()}, status=201)
        except Exception as e:
            return error_response(e)

    async def remove_exception(self, request: web.Request) -> web.Response:
        """DELETE /api/exceptions/{exception_id}"""
        try:
            exception_id = _int_path(request, "exception_id")
            await self._service.remove_exception(exception_id)
            return json_response({"status": "ok", "message": f"Exception {exception_id} removed"})
        except Exception as e:
            return error_response(e)

    # --------------------------------------------------------
    # CONSOLIDATION ENDPOINTS
    # --------------------------------------------------------

    async def run_consolidation(self, request: web.Request) -> web.Response:
        """POST /api/consolidation/run"""
        try:
            result = await self._service.run_consolidation_now()
            return json_response({"status": "ok", "data": result.to_dict()})
        except Exception as e:
            return error_response(e)

    async def consolidation_status(self, request: web.Request) -> web.Response:
        """GET /api/consolidation/status"""
        return json_response({"status": "ok", "data": self._service.consolidator_status()})

    # --------------------------------------------------------
    # SCORE ENDPOINTS
    # --------------------------------------------------------

    async def fleet_summary(self, request: web.Request) -> web.Response:
        """GET /api/fleet/summary?worst=10"""
        try:
            data = await self._service.fleet_summary(worst_n=_int_param(request, "worst", 10))
            return json_response({"status": "ok", "data": data})
        except Exception as e:
            return error_response(e)

    async def transitions(self, request: web.Request) -> web.Response:
        """GET /api/transitions?instance=SQL01&limit=100"""
        try:
            data = await self._service.transitions(
                instance_name=request.query.get("instance"),
                limit=_int_param(request, "limit", 100),
            )
            return json_response({"status": "ok", "data": data})
        except Exception as e:
            return error_response(e)

    async def instance_history(self, request: web.Request) -> web.Response:
        """GET /api/instances/{instance}/history?limit=100"""
        try:
            data = await self._service.instance_history(
                request.match_info["instance"],
                limit=_int_param(request, "limit", 100),
            )
            return json_response({"status": "ok", "data": data})
        except Exception as e:
            return error_response(e)


# ============================================================
# ROUTER FACTORY
# ============================================================

def create_admin_app(service: CollectorAdminService) -> web.Application:
    """
    Create admin API application.

    Returns an aiohttp Application with all routes configured.
    """
    api = AdminAPI(service)

    app = web.Application()
    app.router.add_get("/health", api.health)

    # Collectors; the summary route precedes the {name} routes
    app.router.add_get("/collectors", api.list_collectors)
    app.router.add_get("/collectors/summary", api.get_summary)
    app.router.add_get("/collectors/{name}", api.get_collector)
    app.router.add_patch("/collectors/{name}", api.update_collector)
    app.router.add_post("/collectors/{name}/trigger", api.trigger_collector)
    app.router.add_get("/collectors/{name}/logs", api.get_logs)

    # Rules
    app.router.add_get("/collectors/{name}/rules", api.get_rules)
    app.router.add_put("/collectors/{name}/rules", api.update_rules)
    app.router.add_post("/collectors/{name}/rules/reset", api.reset_rules)
    app.router.add_patch("/rules/{rule_id}", api.update_rule)

    # Exceptions
    app.router.add_get("/collectors/{name}/exception-types", api.get_exception_types)
    app.router.add_get("/exceptions", api.list_exceptions)
    app.router.add_post("/exceptions", api.add_exception)
    app.router.add_delete("/exceptions/{exception_id}", api.remove_exception)

    # Consolidation and scores
    app.router.add_post("/consolidation/run", api.run_consolidation)
    app.router.add_get("/consolidation/status", api.consolidation_status)
    app.router.add_get("/fleet/summary", api.fleet_summary)
    app.router.add_get("/transitions", api.transitions)
    app.router.add_get("/instances/{instance}/history", api.instance_history)

    return app


def setup_admin_routes(
    app: web.Application,
    service: CollectorAdminService,
    prefix: str = "/api",
) -> None:
    """Add admin routes to an existing application."""
    app.add_subapp(prefix, create_admin_app(service))


__all__ = [
    "AdminEncoder",
    "json_response",
    "error_response",
    "AdminAPI",
    "create_admin_app",
    "setup_admin_routes",
]
