"""Run the MCP server with uvicorn.

The ASGI app is served directly with uvicorn.run() so the /health and
/metrics routes registered in mcp_server.py are part of the served app.

Usage:
    python -m tools.run_server
"""
import uvicorn

from tools.mcp_server import app, settings

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
