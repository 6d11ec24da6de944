#!/usr/bin/env python3
"""
Clean Deterministic Startup - Bounty Escrow Engine

Implements:
- Simple, deterministic startup sequence (config -> store -> engine -> jobs)
- Explicit dependency management: the payment capability is injected by the host
- Clear error handling without emergency fallbacks
"""

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from config import Config
from database import build_async_engine, build_session_factory, check_connection, create_tables
from jobs.scheduler import BountyScheduler
from services.bounty_engine import BountyApi, BountyEngine
from services.payment_capability import PaymentCapability
from utils.centralized_logger import setup_logging

logger = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """Startup sequence could not complete"""


class CleanStartupManager:
    """
    Clean startup manager with deterministic sequence.
    No globals, no emergency patterns, no lazy loading.
    """

    def __init__(self, payment_capability: PaymentCapability, database_url: Optional[str] = None,
                 run_jobs: bool = True):
        self.payment_capability = payment_capability
        self.database_url = database_url
        self.run_jobs = run_jobs
        self.db_engine: Optional[AsyncEngine] = None
        self.engine: Optional[BountyEngine] = None
        self.api: Optional[BountyApi] = None
        self.scheduler: Optional[BountyScheduler] = None
        self.startup_complete = False
        self.startup_errors: List[str] = []

    async def initialize_database(self) -> bool:
        """Connect and create missing tables"""
        logger.info("🗄️ Initializing database...")
        self.db_engine = build_async_engine(self.database_url)
        if not await check_connection(self.db_engine):
            self.startup_errors.append("Database: connection test failed")
            return False
        await create_tables(self.db_engine)
        logger.info("✅ Database initialization complete")
        return True

    def create_engine(self):
        session_factory = build_session_factory(self.db_engine)
        self.engine = BountyEngine(session_factory, self.payment_capability)
        self.api = BountyApi(self.engine)
        logger.info("✅ Bounty engine created")

    def start_jobs(self):
        self.scheduler = BountyScheduler(self.engine)
        self.scheduler.start()

    async def startup(self) -> "CleanStartupManager":
        """Run the full sequence; raises StartupError on the first failed step"""
        setup_logging()
        Config.log_environment_config()

        if not await self.initialize_database():
            await self.shutdown()
            raise StartupError("; ".join(self.startup_errors))

        self.create_engine()
        if self.run_jobs:
            self.start_jobs()

        self.startup_complete = True
        logger.info("🚀 Bounty engine startup complete")
        return self

    async def shutdown(self):
        """Stop jobs and release the connection pool"""
        if self.scheduler is not None:
            self.scheduler.stop()
            self.scheduler = None
        if self.db_engine is not None:
            await self.db_engine.dispose()
            self.db_engine = None
        self.startup_complete = False
        logger.info("Bounty engine shut down")


async def start_bounty_engine(payment_capability: PaymentCapability, database_url: Optional[str] = None,
                              run_jobs: bool = True) -> CleanStartupManager:
    """Entry point for host applications"""
    return await CleanStartupManager(payment_capability, database_url, run_jobs).startup()
