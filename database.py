"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the storefront fulfillment engine.
"""

import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    engine = create_engine(
        Config.DATABASE_URL,
        echo=Config.DATABASE_ECHO,
        connect_args={"timeout": 30, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_on_connect(dbapi_connection, connection_record):
        # Transactions are opened explicitly in _sqlite_on_begin
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_on_begin(conn):
        # Single writer: take the write lock at BEGIN so conditional updates serialize
        conn.exec_driver_sql("BEGIN IMMEDIATE")
else:
    engine = create_engine(
        Config.DATABASE_URL,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30,
        echo=Config.DATABASE_ECHO,
        connect_args={
            "connect_timeout": 10,
            "application_name": "storefront_fulfillment",
        },
    )

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def create_tables():
    """Create all tables"""
    Base.metadata.create_all(bind=engine)
    logger.info("✅ Database tables created")
    return True


def drop_tables():
    """Drop all tables"""
    Base.metadata.drop_all(bind=engine)
    logger.info("🗑️ Database tables dropped")


def test_connection() -> bool:
    """Check that the database answers a trivial query"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError as e:
        logger.error(f"❌ Database connection failed: {e}")
        return False
