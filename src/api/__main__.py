"""Entry point for running the dashboard API."""

import os

import uvicorn

if __name__ == "__main__":
    host = os.getenv("DASHBOARD_HOST", "0.0.0.0")
    # DASHBOARD_PORT for local dev, PORT for PaaS platforms
    port = int(os.getenv("DASHBOARD_PORT") or os.getenv("PORT") or "8001")

    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
