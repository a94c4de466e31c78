"""
Pulse Hub — Entry Point
=========================

Run: python main.py
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger("pulse-hub")

PORT = int(os.getenv("DASHBOARD_PORT", "8001"))

if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info("  PULSE HUB — Marketing Analytics API")
    logger.info("=" * 60)
    logger.info("  Environment : %s", os.getenv("ENVIRONMENT", "development"))
    logger.info("  Server      : http://0.0.0.0:%d", PORT)
    logger.info("  API Docs    : http://localhost:%d/docs", PORT)
    logger.info("  Pixel       : http://localhost:%d/api/track/pixel/<pixel_id>.js", PORT)
    logger.info("  WebSocket   : ws://localhost:%d/ws/dashboard", PORT)
    logger.info("  Auth        : %s", "required" if os.getenv("REQUIRE_API_KEY", "false").lower() == "true" else "optional")
    logger.info("=" * 60)

    uvicorn.run(
        "dashboard.api.main:app",
        host="0.0.0.0",
        port=PORT,
        reload=os.getenv("DEBUG", "false").lower() == "true",
    )
