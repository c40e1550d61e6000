#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server with the lending engine, configured from
LENDING_* environment variables.
"""

import sys

import uvicorn

from lending_core.api import create_app
from lending_core.config import get_config


if __name__ == "__main__":
    config = get_config()

    print("Starting Lending Core...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(
            create_app(),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        print("\nShutting down Lending Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
