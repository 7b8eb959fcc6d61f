"""
Tools API Routes.

Endpoints for listing the tools that node handlers can call.
"""

from fastapi import APIRouter, HTTPException

from stateflow.api.schemas import (
    ToolInfo,
    ToolListResponse,
    ErrorResponse,
)
from stateflow.tools.registry import tool_registry


router = APIRouter(prefix="/tools", tags=["Tools"])


@router.get(
    "/",
    response_model=ToolListResponse,
)
async def list_tools() -> ToolListResponse:
    """
    List all registered tools.

    Any tool can be used as a node handler by name when creating a graph.
    """
    tool_infos = [ToolInfo(**t) for t in tool_registry.list_tools()]
    return ToolListResponse(tools=tool_infos, total=len(tool_infos))


@router.get(
    "/{tool_name}",
    response_model=ToolInfo,
    responses={404: {"model": ErrorResponse}},
)
async def get_tool(tool_name: str) -> ToolInfo:
    """Get information about a specific tool."""
    tool = tool_registry.get(tool_name)
    if not tool:
        raise HTTPException(
            status_code=404,
            detail=f"Tool '{tool_name}' not found"
        )
    return ToolInfo(**tool.to_dict())
