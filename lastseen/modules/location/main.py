"""Location Module — FastAPI service for the Last Seen circle."""

from __future__ import annotations

import structlog
from fastapi import Depends, FastAPI

from modules.location.geocoding import ReverseGeocoder
from modules.location.manifest import MANIFEST
from modules.location.store import LocationStore
from modules.location.tools import LocationTools
from shared.auth import require_service_auth
from shared.config import get_settings
from shared.database import dispose_engine, get_session_factory
from shared.schemas.common import HealthResponse
from shared.schemas.location import PublicShareResponse
from shared.schemas.tools import ModuleManifest, ToolCall, ToolResult

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Location Module", version="1.0.0")

tools: LocationTools | None = None

# Tools that act on behalf of a signed-in user
USER_TOOLS = {
    "get_circle",
    "log_location",
    "stop_sharing",
    "list_connections",
    "add_connection",
    "remove_connection",
    "enable_public_share",
    "disable_public_share",
}


@app.on_event("startup")
async def startup():
    global tools
    settings = get_settings()
    store = LocationStore(get_session_factory())
    geocoder = ReverseGeocoder(
        url=settings.nominatim_reverse_url,
        user_agent=settings.geocoder_user_agent,
        timeout=settings.geocoder_timeout_seconds,
    )
    tools = LocationTools(store, settings, geocoder=geocoder)
    logger.info("location_module_ready", policy=settings.visibility_policy)


@app.on_event("shutdown")
async def shutdown():
    global tools
    if tools is not None:
        await tools.close()
        tools = None
    await dispose_engine()


# --- Public share link (no sign-in) ---


@app.get("/share/{token}", response_model=PublicShareResponse)
async def public_share(token: str):
    """Resolve a public share link.

    Always answers 200; a dead link reads as ``unavailable`` whatever the
    reason, so links cannot be probed.
    """
    if tools is None:
        return PublicShareResponse(status="unavailable")
    return PublicShareResponse(**await tools.public_share(token))


# --- Standard module endpoints ---


@app.get("/manifest", response_model=ModuleManifest)
async def manifest(_=Depends(require_service_auth)):
    """Return the module manifest."""
    return MANIFEST


@app.post("/execute", response_model=ToolResult)
async def execute(call: ToolCall, _=Depends(require_service_auth)):
    """Execute a tool call."""
    if tools is None:
        return ToolResult(tool_name=call.tool_name, success=False, error="Module not ready")

    tool_name = call.tool_name.split(".")[-1]
    if tool_name not in USER_TOOLS:
        return ToolResult(
            tool_name=call.tool_name,
            success=False,
            error=f"Unknown tool: {call.tool_name}",
        )

    try:
        args = dict(call.arguments)
        args.pop("user_id", None)
        result = await getattr(tools, tool_name)(user_id=call.user_id, **args)
    except TypeError as e:
        return ToolResult(tool_name=call.tool_name, success=False, error=f"Invalid arguments: {e}")
    except Exception as e:
        logger.exception("tool_execution_error", tool=call.tool_name)
        return ToolResult(tool_name=call.tool_name, success=False, error=str(e))

    if "error" in result and result.get("success") is not True:
        return ToolResult(
            tool_name=call.tool_name, success=False, result=result, error=result["error"]
        )
    return ToolResult(tool_name=call.tool_name, success=True, result=result)


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok")
