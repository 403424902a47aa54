"""
Entry point for running the Proposal API server.

Usage:
    python -m proposal_api

This starts the FastAPI server on http://HOST:PORT (default 0.0.0.0:3000)
"""
import uvicorn

from logging_setup import setup_logging
from .config import ServerConfig

if __name__ == "__main__":
    config = ServerConfig.from_env()

    setup_logging(level=config.log_level, use_json=True)

    uvicorn.run(
        "proposal_api.server:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower()
    )
