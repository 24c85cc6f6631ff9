#!/usr/bin/env python3
"""
StorePulse API Startup Script

Starts the StorePulse FastAPI server in development mode.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the StorePulse API server."""
    print("Starting StorePulse API Server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   cp .env.template .env && python generate_keys.py")
        print("")

    try:
        uvicorn.run(
            "storepulse.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["storepulse"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down StorePulse API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
