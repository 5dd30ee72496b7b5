#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server with the lending engine. Database and logging come
from LENDING_* environment variables (see lending_core/config.py); host and
port default to LENDING_API_HOST/LENDING_API_PORT and can be overridden with
--host and --port.
"""

import argparse
import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lending_core.api import run_server
from lending_core.config import get_config


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the lending engine API")
    parser.add_argument("--host", help="Bind address (default: LENDING_API_HOST)")
    parser.add_argument("--port", type=int, help="Bind port (default: LENDING_API_PORT)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    config = get_config()
    host = args.host or config.api_host
    port = args.port or config.api_port
    print("Starting Lending Core...")
    print(f"Database: {config.database_url}")
    print(f"API available at: http://{host}:{port}")
    print(f"Documentation at: http://{host}:{port}/docs")
    print()

    try:
        run_server(host=host, port=port, debug=args.reload)
    except KeyboardInterrupt:
        print("\nShutting down Lending Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
