"""
Database management for the Job Store
"""
from typing import Optional

import databases
import sqlalchemy
from docjobs.config import settings

database = databases.Database(settings.DATABASE_URL)

metadata = sqlalchemy.MetaData()

batches = sqlalchemy.Table(
    "batches",
    metadata,
    sqlalchemy.Column("batch_id", sqlalchemy.String(64), primary_key=True),
    sqlalchemy.Column("library_id", sqlalchemy.String(255), nullable=True, index=True),
    # Summary columns are derived from jobs and rewritten with every job status change
    sqlalchemy.Column("total", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("pending", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("processing", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("completed", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("failed", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime, nullable=False),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime, nullable=False),
)

jobs = sqlalchemy.Table(
    "jobs",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True, autoincrement=True),
    sqlalchemy.Column("batch_id", sqlalchemy.String(64), sqlalchemy.ForeignKey("batches.batch_id"), nullable=False, index=True),
    sqlalchemy.Column("library_id", sqlalchemy.String(255), nullable=True, index=True),
    sqlalchemy.Column("source_url", sqlalchemy.Text, nullable=False),
    sqlalchemy.Column("scrape_type", sqlalchemy.String(20), nullable=False),
    sqlalchemy.Column("origin_url", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("status", sqlalchemy.String(20), nullable=False, default="pending", index=True),
    sqlalchemy.Column("error_message", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime, nullable=False),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime, nullable=False),
    sqlalchemy.Column("processed_at", sqlalchemy.DateTime, nullable=True),
)


async def create_tables(database_url: Optional[str] = None):
    """Create database tables"""
    engine = sqlalchemy.create_engine(database_url or settings.DATABASE_URL)
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()

async def connect_db():
    """Connect to the database"""
    await database.connect()

async def disconnect_db():
    """Disconnect from the database"""
    await database.disconnect()
