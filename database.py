# --- models + engine for the order reconciliation store ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import JSON, String, Text, Integer, DateTime, func, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from typing import Any, Dict, Optional
import logging, os, uuid

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")


def normalize_database_url(url: str) -> str:
    """Route plain postgres URLs through asyncpg; empty means in-memory SQLite."""
    if not url:
        return "sqlite+aiosqlite:///:memory:"
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg takes ssl via connect_args, not sslmode
    for param in ("?sslmode=require", "&sslmode=require"):
        url = url.replace(param, "")
    return url


def build_engine(url: str):
    url = normalize_database_url(url)
    echo = os.getenv("NODE_ENV") == "development"
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,
        pool_timeout=15,
        connect_args={
            "server_settings": {"application_name": "order_reconciler"},
            "command_timeout": 60,
            "timeout": 30,
        },
    )


engine = build_engine(DATABASE_URL)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
            return url
    except ValueError:
        pass
    if "@" not in url:
        return url
    return "******"


logger.info(f"Creating SQL engine for { _redact_db_url(normalize_database_url(DATABASE_URL)) }")


async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")


async def check_db_health() -> Dict[str, Any]:
    """Connectivity check for the health endpoint. Never raises."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok", "dialect": engine.dialect.name}
    except Exception as e:
        logger.warning(f"DB health check failed: {type(e).__name__}: {e}")
        return {"status": "error", "dialect": engine.dialect.name, "error": str(e)[:200]}

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


# JSONB on Postgres, plain JSON elsewhere (SQLite in dev/tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class OrderRecord(Base):
    """Reconciled order, one row per (owner_id, order_id)."""
    __tablename__ = "orders"

    owner_id: Mapped[str] = mapped_column(String, primary_key=True)
    order_id: Mapped[str] = mapped_column(String, primary_key=True)

    # mirrors data["category"] so views can filter without parsing the snapshot
    category: Mapped[str] = mapped_column(String, nullable=False, default="AUTO")
    latest_dispute_status: Mapped[str] = mapped_column(String, nullable=False, default="none")
    latest_risk_label: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    sources: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    data: Mapped[dict] = mapped_column(JSONDocument, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class ImportRun(Base):
    """Bookkeeping for one import batch (CSV file, feed page, manual edit, revalidation)."""
    __tablename__ = "import_runs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)

    source: Mapped[str] = mapped_column(String, nullable=False)
    filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="AUTO")

    status: Mapped[str] = mapped_column(String, nullable=False, default="processing")
    total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quarantined_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing','completed','failed')",
            name="ck_import_runs_status",
        ),
        CheckConstraint(
            "source IN ('csv','feed','manual','revalidate')",
            name="ck_import_runs_source",
        ),
    )

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_orders_owner_category', OrderRecord.owner_id, OrderRecord.category)
Index('ix_orders_owner_updated', OrderRecord.owner_id, OrderRecord.updated_at)
Index('ix_import_runs_owner_created', ImportRun.owner_id, ImportRun.created_at)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")
