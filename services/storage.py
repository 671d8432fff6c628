"""
Storage Service Layer
Database operations for reconciled orders and import runs, scoped by owner.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, func, desc, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from typing import List, Optional, Dict, Any, Sequence
import logging

from database import AsyncSessionLocal, OrderRecord, ImportRun
from schemas.order_schemas import (
    CanonicalOrder,
    Category,
    DisputeState,
    OrderView,
    PersistedOrderRecord,
)
from settings import RECONCILE_CHUNK_SIZE, require_owner_id
from utils import chunked, sanitize_string

logger = logging.getLogger(__name__)

OPEN_DISPUTE_LABELS = (DisputeState.NEEDS_RESPONSE.value, DisputeState.UNDER_REVIEW.value)
CLOSED_DISPUTE_LABELS = (DisputeState.WON.value, DisputeState.LOST.value)


def record_from_row(row: OrderRecord) -> PersistedOrderRecord:
    try:
        dispute = DisputeState(row.latest_dispute_status or DisputeState.NONE.value)
    except ValueError:
        logger.warning(
            f"Unknown dispute label {row.latest_dispute_status!r} on {row.owner_id}/{row.order_id}; treating as none"
        )
        dispute = DisputeState.NONE
    return PersistedOrderRecord(
        owner_id=row.owner_id,
        order_id=row.order_id,
        latest_dispute_status=dispute,
        latest_risk_label=row.latest_risk_label,
        sources=dict(row.sources or {}),
        snapshot=CanonicalOrder.from_dict(row.data or {"id": row.order_id}),
    )


def view_filter(view: OrderView):
    """WHERE clause for a dashboard view (owner filter applied separately)."""
    not_invalid = OrderRecord.category != Category.INVALID.value
    if view == OrderView.RISK:
        return and_(OrderRecord.latest_risk_label == "high", not_invalid)
    if view == OrderView.DISPUTES:
        return and_(OrderRecord.latest_dispute_status.in_(OPEN_DISPUTE_LABELS), not_invalid)
    if view == OrderView.HISTORY:
        return and_(OrderRecord.latest_dispute_status.in_(CLOSED_DISPUTE_LABELS), not_invalid)
    if view == OrderView.DATA_ISSUES:
        return OrderRecord.category == Category.INVALID.value
    return None


class StorageService:
    """Storage service providing database operations"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        return self._session_factory()

    def _insert_for(self, session: AsyncSession):
        """Dialect-specific INSERT so ON CONFLICT works on Postgres and SQLite alike."""
        if session.get_bind().dialect.name == "sqlite":
            return sqlite_insert
        return pg_insert

    def _overwrite_all_columns(self, table, stmt):
        """Helper to update all columns except primary key(s) in UPSERT operations"""
        pks = {c.name for c in table.primary_key.columns}
        columns = {
            c.name: getattr(stmt.excluded, c.name)
            for c in table.columns
            if c.name not in pks and c.name not in ('created_at', 'updated_at')
        }
        columns['updated_at'] = func.now()
        return columns

    # ------------------------------------------------------------------
    # Orders (reconciler side: caller owns the session/transaction)
    # ------------------------------------------------------------------
    async def get_order_records(
        self,
        session: AsyncSession,
        owner_id: str,
        order_ids: Sequence[str],
        chunk_size: int = RECONCILE_CHUNK_SIZE,
    ) -> Dict[str, PersistedOrderRecord]:
        """Bulk-read existing records for the given ids, chunked."""
        found: Dict[str, PersistedOrderRecord] = {}
        for chunk in chunked(list(order_ids), chunk_size):
            result = await session.execute(
                select(OrderRecord).where(
                    OrderRecord.owner_id == owner_id,
                    OrderRecord.order_id.in_(chunk),
                )
            )
            for row in result.scalars().all():
                found[row.order_id] = record_from_row(row)
        return found

    async def upsert_order_records(
        self,
        session: AsyncSession,
        records: Sequence[PersistedOrderRecord],
        chunk_size: int = RECONCILE_CHUNK_SIZE,
    ) -> int:
        """Bulk upsert keyed on (owner_id, order_id). Does not commit."""
        if not records:
            return 0
        insert = self._insert_for(session)
        table = OrderRecord.__table__
        written = 0
        for chunk in chunked(list(records), chunk_size):
            stmt = insert(OrderRecord).values([r.to_row() for r in chunk])
            upsert = stmt.on_conflict_do_update(
                index_elements=[OrderRecord.owner_id, OrderRecord.order_id],
                set_=self._overwrite_all_columns(table, stmt),
            )
            await session.execute(upsert)
            written += len(chunk)
        return written

    # ------------------------------------------------------------------
    # Orders (read side)
    # ------------------------------------------------------------------
    async def get_order(self, owner_id: str, order_id: str) -> Optional[PersistedOrderRecord]:
        owner_id = require_owner_id(owner_id)
        async with self.get_session() as session:
            row = await session.get(OrderRecord, (owner_id, order_id))
            return record_from_row(row) if row is not None else None

    async def list_orders(
        self,
        owner_id: str,
        view: OrderView = OrderView.ALL,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[PersistedOrderRecord]:
        """Records for one dashboard view, newest update first."""
        owner_id = require_owner_id(owner_id)
        query = select(OrderRecord).where(OrderRecord.owner_id == owner_id)
        clause = view_filter(OrderView(view))
        if clause is not None:
            query = query.where(clause)
        query = query.order_by(desc(OrderRecord.updated_at), OrderRecord.order_id)
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self.get_session() as session:
            result = await session.execute(query)
            return [record_from_row(row) for row in result.scalars().all()]

    async def count_by_view(self, owner_id: str) -> Dict[str, int]:
        """Tab badge counts for every view."""
        owner_id = require_owner_id(owner_id)
        counts: Dict[str, int] = {}
        async with self.get_session() as session:
            for view in OrderView:
                query = select(func.count()).select_from(OrderRecord).where(OrderRecord.owner_id == owner_id)
                clause = view_filter(view)
                if clause is not None:
                    query = query.where(clause)
                counts[view.value] = int((await session.execute(query)).scalar() or 0)
        return counts

    async def purge_owner(self, owner_id: str) -> int:
        """Delete every order and import run for one owner. Returns orders deleted."""
        owner_id = require_owner_id(owner_id)
        async with self.get_session() as session:
            async with session.begin():
                orders = await session.execute(delete(OrderRecord).where(OrderRecord.owner_id == owner_id))
                runs = await session.execute(delete(ImportRun).where(ImportRun.owner_id == owner_id))
        logger.info(f"Purged owner {owner_id}: orders={orders.rowcount} import_runs={runs.rowcount}")
        return int(orders.rowcount or 0)

    # ------------------------------------------------------------------
    # Import runs
    # ------------------------------------------------------------------
    async def create_import_run(self, run_data: Dict[str, Any]) -> ImportRun:
        """Create new import run record"""
        async with self.get_session() as session:
            payload = dict(run_data)
            payload["owner_id"] = require_owner_id(payload.get("owner_id"))
            payload.setdefault("status", "processing")
            run = ImportRun(**payload)
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    async def get_import_run(self, owner_id: str, run_id: str) -> Optional[ImportRun]:
        owner_id = require_owner_id(owner_id)
        async with self.get_session() as session:
            run = await session.get(ImportRun, run_id)
            # runs of another owner are invisible
            if run is None or run.owner_id != owner_id:
                return None
            return run

    async def update_import_run(self, run_id: str, updates: Dict[str, Any]) -> Optional[ImportRun]:
        """Update import run record"""
        async with self.get_session() as session:
            run = await session.get(ImportRun, run_id)
            if run:
                change_set = dict(updates)
                if change_set.get("error_message") is not None:
                    change_set["error_message"] = sanitize_string(change_set["error_message"], 2000)
                for key, value in change_set.items():
                    setattr(run, key, value)
                await session.commit()
                await session.refresh(run)
            return run

    async def get_recent_import_runs(self, owner_id: str, limit: int = 10) -> List[ImportRun]:
        """Get recent import runs for one owner"""
        owner_id = require_owner_id(owner_id)
        async with self.get_session() as session:
            query = (
                select(ImportRun)
                .where(ImportRun.owner_id == owner_id)
                .order_by(desc(ImportRun.created_at))
                .limit(limit)
            )
            result = await session.execute(query)
            return list(result.scalars().all())


storage = StorageService()
