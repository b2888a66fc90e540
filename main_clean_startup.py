#!/usr/bin/env python3
"""
Clean Deterministic Startup - Storefront Fulfillment Engine

Implements:
- Simple, deterministic startup sequence
- Explicit dependency management
- Clear error handling without emergency fallbacks
"""

import logging
import asyncio
import os
import sys
from typing import List

import uvicorn

from config import Config
from database import create_tables, test_connection

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Quiet chatty third-party loggers
for noisy_logger in ("httpx", "telegram.ext", "apscheduler", "aiohttp.access"):
    logging.getLogger(noisy_logger).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


class CleanStartupManager:
    """
    Clean startup manager with deterministic sequence.
    Database first, configuration report second, then the HTTP server (which owns
    the lease monitor scheduler through its lifespan).
    """

    def __init__(self):
        self.startup_complete = False
        self.startup_errors: List[str] = []

    async def initialize_database(self) -> bool:
        """Initialize database with clean error handling."""
        try:
            logger.info("🗄️ Initializing database...")

            if not test_connection():
                raise RuntimeError("Database connection test failed")

            if not create_tables():
                raise RuntimeError("Table creation failed")

            logger.info("✅ Database initialization complete - all tables created")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def check_configuration(self) -> bool:
        """Report missing provider credentials; features depending on them stay disabled."""
        Config.log_environment_config()
        missing = Config.validate()
        for key in missing:
            self.startup_errors.append(f"Config: {key} missing")
        return True

    async def startup_sequence(self) -> bool:
        """Execute clean startup sequence without emergency patterns."""
        logger.info("🚀 Starting storefront fulfillment engine...")

        startup_steps = [
            ("Database", self.initialize_database),
            ("Configuration", self.check_configuration),
        ]

        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            success = await step_func()

            if not success:
                logger.error(f"❌ Step '{step_name}' failed")
                if step_name == "Database":
                    logger.error("🚨 Critical step failed - cannot continue startup")
                    return False
                logger.warning(f"⚠️ Non-critical step '{step_name}' failed - continuing startup")

        if self.startup_errors:
            logger.warning(f"⚠️ Startup completed with {len(self.startup_errors)} warnings:")
            for error in self.startup_errors:
                logger.warning(f"  - {error}")
        else:
            logger.info("✅ Clean startup sequence completed successfully")

        self.startup_complete = True
        return True


startup_manager = CleanStartupManager()


async def main_clean():
    """Run the startup sequence, then serve the HTTP app until stopped."""
    success = await startup_manager.startup_sequence()
    if not success:
        logger.error("❌ Startup failed - exiting")
        sys.exit(1)

    server = uvicorn.Server(uvicorn.Config(
        "webhook_server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
        log_level="info",
    ))
    logger.info("🎉 Storefront fulfillment engine startup complete!")
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(main_clean())
    except KeyboardInterrupt:
        logger.info("👋 Stopped by user")
