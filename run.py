#!/usr/bin/env python3
"""
Simple run script for the StateFlow service.

Usage:
    python run.py

Or with custom settings:
    HOST=127.0.0.1 PORT=8080 python run.py
"""

import uvicorn

from stateflow.config import settings


def main():
    """Run the FastAPI application."""
    print(f"""
StateFlow - state graph engine
  Server:    http://{settings.HOST}:{settings.PORT}
  API Docs:  http://{settings.HOST}:{settings.PORT}/docs
  Demo workflow ID: agent-loop-demo
    """)

    uvicorn.run(
        "stateflow.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
