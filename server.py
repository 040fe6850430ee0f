"""Sentra API server entry point."""

import uvicorn

from sentra.core.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    print(f"Starting Sentra API server on {settings.api_host}:{settings.api_port}")
    uvicorn.run("sentra.main:app", host=settings.api_host, port=settings.api_port)
