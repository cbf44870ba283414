#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server with the lending core. Each worker builds its own
app through the factory, so more than one worker needs sqlite storage.
"""

import sys

from lending_core.api import run_server
from lending_core.config import get_config


if __name__ == "__main__":
    config = get_config()

    print("Starting Lending Core...")
    print(f"Storage: {config.storage_backend} ({config.database_path})")
    print(f"Workers: {config.api_workers}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(config)
    except KeyboardInterrupt:
        print("\nShutting down Lending Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
