"""Main entry point for the agency API server."""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from agency.api import create_fastapi_app
from agency.logging_config import setup_logging


def main():
    """Run the application."""
    load_dotenv(Path(__file__).resolve().parent / ".env")
    setup_logging()

    api_host = os.getenv("API_HOST", "localhost")
    api_port = int(os.getenv("API_PORT", "8000"))

    app = create_fastapi_app()

    uvicorn.run(
        app,
        host=api_host,
        port=api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
