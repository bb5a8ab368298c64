from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from mcp_tenant_gateway import __version__
from mcp_tenant_gateway.lms_client import (
    LmsApiClient,
    LmsApiError,
    TenantNotConfiguredError,
)

logger = logging.getLogger("uvicorn.error")

PROTOCOL_VERSION = "2025-03-26"
SERVER_NAME = "mcp-tenant-gateway"

INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

LMS_API_GET_TOOL = "lms_api_get"

TOOLS: list[dict[str, Any]] = [
    {
        "name": LMS_API_GET_TOOL,
        "description": (
            "Perform a GET request against the tenant's LMS REST API using the "
            "caller's access token."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute API path, e.g. /manage/v1/user",
                },
                "query": {
                    "type": "object",
                    "description": "Optional query string parameters",
                    "additionalProperties": {"type": ["string", "number", "boolean"]},
                },
            },
            "required": ["path"],
        },
    }
]


class ToolCallError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def jsonrpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }


class McpDispatcher:
    """Minimal MCP JSON-RPC handler that forwards tool calls upstream."""

    def __init__(self, lms_client: LmsApiClient):
        self._lms_client = lms_client

    async def handle(
        self,
        request: dict[str, Any],
        bearer_token: str,
        tenant: str,
    ) -> dict[str, Any]:
        request_id = request.get("id")
        if request.get("jsonrpc") != "2.0":
            return jsonrpc_error(
                request_id,
                INVALID_REQUEST,
                'Invalid JSON-RPC version. Must be "2.0"',
            )
        method = request.get("method")
        if not isinstance(method, str) or not method:
            return jsonrpc_error(
                request_id, INVALID_REQUEST, "Invalid Request: missing method field"
            )

        logger.info("mcp_request tenant=%s method=%s", tenant, method)
        if method == "initialize":
            return _result(
                request_id,
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "serverInfo": {"name": SERVER_NAME, "version": __version__},
                    "capabilities": {"tools": {}},
                },
            )
        if method == "ping":
            return _result(request_id, {})
        if method == "tools/list":
            return _result(request_id, {"tools": TOOLS})
        if method == "tools/call":
            try:
                result = await self._call_tool(
                    request.get("params"), bearer_token, tenant
                )
            except ToolCallError as exc:
                return jsonrpc_error(request_id, exc.code, exc.message)
            return _result(request_id, result)

        return jsonrpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _call_tool(
        self, params: Any, bearer_token: str, tenant: str
    ) -> dict[str, Any]:
        if not isinstance(params, dict) or not params.get("name"):
            raise ToolCallError(INVALID_PARAMS, "Missing required parameter: name")
        name = params["name"]
        if name != LMS_API_GET_TOOL:
            raise ToolCallError(METHOD_NOT_FOUND, f"Unknown tool: {name}")

        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise ToolCallError(INVALID_PARAMS, "Tool arguments must be an object")
        path = arguments.get("path")
        if not isinstance(path, str) or not path.startswith("/"):
            raise ToolCallError(
                INVALID_PARAMS, "Missing required parameter: path (absolute API path)"
            )
        query = arguments.get("query")
        if query is not None and not isinstance(query, dict):
            raise ToolCallError(INVALID_PARAMS, "query must be an object")

        try:
            payload = await self._lms_client.get(tenant, bearer_token, path, query)
        except TenantNotConfiguredError as exc:
            raise ToolCallError(INTERNAL_ERROR, str(exc)) from exc
        except LmsApiError as exc:
            raise ToolCallError(INTERNAL_ERROR, str(exc)) from exc
        except ValueError as exc:
            raise ToolCallError(INVALID_PARAMS, str(exc)) from exc
        except httpx.RequestError as exc:
            raise ToolCallError(INTERNAL_ERROR, "LMS API request failed") from exc

        return {
            "content": [{"type": "text", "text": json.dumps(payload, indent=2)}],
        }
