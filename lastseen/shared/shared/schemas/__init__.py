"""Pydantic schemas for the location service."""

from shared.schemas.common import HealthResponse
from shared.schemas.location import PublicShareResponse, SharedLocation
from shared.schemas.tools import (
    ModuleManifest,
    ToolCall,
    ToolDefinition,
    ToolParameter,
    ToolResult,
)

__all__ = [
    "HealthResponse",
    "ModuleManifest",
    "PublicShareResponse",
    "SharedLocation",
    "ToolCall",
    "ToolDefinition",
    "ToolParameter",
    "ToolResult",
]
