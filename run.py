"""Entry point for the League Registry API.

Starts the FastAPI application with Uvicorn.  Intended to be executed
from the project root, for example in Docker or on a PaaS where only
a single Python file to run is specified.

Configuration such as DATABASE_URL, STRIPE_SECRET_KEY, XERO_CLIENT_ID
and CRON_SECRET is read from the environment.

Usage:
    python run.py
"""
import asyncio
import logging
import os

from uvicorn import Config, Server

from league_registry_api.app.main import app


async def run_api() -> None:
    """Serve the API.

    Host and port are read from environment variables `HOST` and
    `PORT`. Defaults are `0.0.0.0` and `8000`.
    """
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    config = Config(app=app, host=host, port=port, reload=False, log_level="info")
    server = Server(config)
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(run_api())
    except (KeyboardInterrupt, SystemExit):
        logging.getLogger(__name__).info("Server stopped")
