"""
Order Import Service
Runs one import end to end:

    ImportRun(processing) -> adapter (CSV / feed) -> classify -> [owner lock]
    -> reconcile(validate against previous snapshot) -> ImportRun(completed)

Batch-level failures mark the run failed with a single message and re-raise.
Also hosts the operator actions on single orders (approve, fix) and the
owner-wide revalidation and purge.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
import logging
import time

from schemas.order_schemas import (
    CanonicalOrder,
    Category,
    PersistedOrderRecord,
    parse_operator_category,
)
from services.classifier import classify_order
from services.concurrency_control import ConcurrencyController, concurrency_controller
from services.csv_parser import decode_payload
from services.csv_processor import CSVProcessor
from services.errors import OrderImportError, OrderNotFoundError
from services.feed_mapper import map_feed_nodes
from services.reconciler import Reconciler, ReconcileResult
from services.storage import StorageService, storage
from services.validation import apply_fixes_and_revalidate, force_approve, validate_order
from settings import require_owner_id

logger = logging.getLogger(__name__)


@dataclass
class ImportSummary:
    run_id: str
    owner_id: str
    source: str
    category: str
    status: str
    total_rows: int = 0
    processed_orders: int = 0
    quarantined_orders: int = 0
    skipped_rows: int = 0
    created_orders: int = 0
    updated_orders: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_category(category: Union[Category, str, None]) -> Category:
    if isinstance(category, Category):
        if category == Category.INVALID:
            raise ValueError("Category INVALID cannot be selected on import")
        return category
    return parse_operator_category(category)


class OrderImporter:

    def __init__(
        self,
        store: Optional[StorageService] = None,
        reconciler: Optional[Reconciler] = None,
        controller: Optional[ConcurrencyController] = None,
    ):
        self.store = store or storage
        self.controller = controller or concurrency_controller
        self.reconciler = reconciler or Reconciler(store=self.store, controller=self.controller)
        self.csv_processor = CSVProcessor()

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------
    async def import_csv(
        self,
        owner_id: str,
        content: Union[bytes, str],
        category: Union[Category, str, None] = Category.AUTO,
        filename: Optional[str] = None,
    ) -> ImportSummary:
        owner_id = require_owner_id(owner_id)
        category = _as_category(category)
        run = await self.store.create_import_run({
            "owner_id": owner_id,
            "source": "csv",
            "filename": filename,
            "category": category.value,
        })
        logger.info(
            f"[{run.id}] CSV import started owner={owner_id} file={filename!r} category={category.value}",
            extra={"run_id": run.id, "owner_id": owner_id},
        )

        try:
            parsed = self.csv_processor.parse_orders(decode_payload(content))
        except OrderImportError as e:
            await self._fail_run(run.id, str(e))
            raise
        except Exception as e:
            await self._fail_run(run.id, f"Malformed CSV: {type(e).__name__}: {e}")
            raise

        return await self._ingest(
            run.id, owner_id, parsed.orders, category, "csv",
            total_rows=parsed.total_rows, skipped_rows=parsed.skipped_rows,
        )

    async def import_feed(
        self,
        owner_id: str,
        nodes: Iterable[Dict[str, Any]],
        category: Union[Category, str, None] = Category.AUTO,
    ) -> ImportSummary:
        """Import one page of already-fetched feed nodes."""
        owner_id = require_owner_id(owner_id)
        category = _as_category(category)
        nodes = list(nodes or [])
        run = await self.store.create_import_run({
            "owner_id": owner_id,
            "source": "feed",
            "category": category.value,
        })
        logger.info(
            f"[{run.id}] Feed import started owner={owner_id} nodes={len(nodes)} category={category.value}",
            extra={"run_id": run.id, "owner_id": owner_id},
        )

        try:
            orders, skipped = map_feed_nodes(nodes)
        except Exception as e:
            await self._fail_run(run.id, f"Malformed feed node: {type(e).__name__}: {e}")
            raise

        return await self._ingest(
            run.id, owner_id, orders, category, "feed",
            total_rows=len(nodes), skipped_rows=skipped,
        )

    async def _ingest(
        self,
        run_id: str,
        owner_id: str,
        orders: Sequence[CanonicalOrder],
        category: Category,
        origin: str,
        total_rows: int,
        skipped_rows: int,
    ) -> ImportSummary:
        start = time.time()
        classified = [classify_order(o, category) for o in orders]

        def prepare(order: CanonicalOrder, previous: Optional[CanonicalOrder]) -> CanonicalOrder:
            return validate_order(order, category, previous)

        try:
            async with self.controller.owner_lock(owner_id):
                result = await self.reconciler.reconcile(classified, owner_id, origin, prepare=prepare)
        except Exception as e:
            logger.error(f"[{run_id}] Import failed during reconcile: {type(e).__name__}: {e}")
            await self._fail_run(run_id, f"Storage failure: {type(e).__name__}")
            raise

        quarantined = sum(1 for r in result.records if r.snapshot.is_invalid)
        await self.store.update_import_run(run_id, {
            "status": "completed",
            "total_rows": total_rows,
            "processed_orders": len(result.records),
            "quarantined_orders": quarantined,
            "skipped_rows": skipped_rows,
        })
        logger.info(
            f"[{run_id}] Import completed owner={owner_id} origin={origin} rows={total_rows} "
            f"orders={len(result.records)} quarantined={quarantined} skipped={skipped_rows} "
            f"in {time.time() - start:.2f}s",
            extra={"run_id": run_id, "owner_id": owner_id},
        )
        return ImportSummary(
            run_id=run_id,
            owner_id=owner_id,
            source=origin,
            category=category.value,
            status="completed",
            total_rows=total_rows,
            processed_orders=len(result.records),
            quarantined_orders=quarantined,
            skipped_rows=skipped_rows,
            created_orders=result.created,
            updated_orders=result.updated,
        )

    async def _fail_run(self, run_id: str, message: str) -> None:
        logger.error(f"[{run_id}] Import failed: {message}")
        await self.store.update_import_run(run_id, {"status": "failed", "error_message": message})

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    async def _require_record(self, owner_id: str, order_id: str) -> PersistedOrderRecord:
        record = await self.store.get_order(owner_id, order_id)
        if record is None:
            raise OrderNotFoundError(owner_id, order_id)
        return record

    async def _write_manual(self, owner_id: str, order: CanonicalOrder) -> PersistedOrderRecord:
        """Persist one operator-touched order and record it as a manual run."""
        run = await self.store.create_import_run({
            "owner_id": owner_id,
            "source": "manual",
            "category": order.category.value,
        })
        try:
            result = await self.reconciler.reconcile([order], owner_id, "manual")
        except Exception as e:
            await self._fail_run(run.id, f"Storage failure: {type(e).__name__}")
            raise

        record = result.records[0]
        await self.store.update_import_run(run.id, {
            "status": "completed",
            "total_rows": 1,
            "processed_orders": 1,
            "quarantined_orders": 1 if record.snapshot.is_invalid else 0,
        })
        return record

    async def approve_order(self, owner_id: str, order_id: str) -> PersistedOrderRecord:
        """Manual approval out of quarantine; AmbiguousRecoveryError propagates."""
        owner_id = require_owner_id(owner_id)
        async with self.controller.owner_lock(owner_id):
            record = await self._require_record(owner_id, order_id)
            approved = force_approve(record.snapshot)
            return await self._write_manual(owner_id, approved)

    async def update_order(self, owner_id: str, order_id: str, updates: Dict[str, Any]) -> PersistedOrderRecord:
        """Apply operator edits to one order and re-validate it."""
        owner_id = require_owner_id(owner_id)
        async with self.controller.owner_lock(owner_id):
            record = await self._require_record(owner_id, order_id)
            fixed = apply_fixes_and_revalidate(record.snapshot, updates)
            if fixed.is_invalid:
                logger.info(f"Order {order_id} still quarantined after edit: {fixed.validation_error}")
            return await self._write_manual(owner_id, fixed)

    async def revalidate_owner(self, owner_id: str) -> int:
        """Re-run validation over every stored snapshot; returns how many changed."""
        owner_id = require_owner_id(owner_id)
        async with self.controller.owner_lock(owner_id):
            records = await self.store.list_orders(owner_id)
            changed: List[CanonicalOrder] = []
            for record in records:
                snapshot = record.snapshot
                validated = validate_order(snapshot, Category.AUTO, previous=snapshot)
                if (
                    validated.category != snapshot.category
                    or validated.validation_error != snapshot.validation_error
                ):
                    changed.append(validated)

            if changed:
                run = await self.store.create_import_run({
                    "owner_id": owner_id,
                    "source": "revalidate",
                    "category": Category.AUTO.value,
                })
                result: ReconcileResult = await self.reconciler.reconcile(changed, owner_id, "revalidate")
                await self.store.update_import_run(run.id, {
                    "status": "completed",
                    "total_rows": len(records),
                    "processed_orders": len(result.records),
                    "quarantined_orders": sum(1 for r in result.records if r.snapshot.is_invalid),
                })
        logger.info(f"Revalidated owner={owner_id} orders={len(records)} changed={len(changed)}")
        return len(changed)

    async def purge(self, owner_id: str) -> int:
        owner_id = require_owner_id(owner_id)
        async with self.controller.owner_lock(owner_id):
            return await self.store.purge_owner(owner_id)


order_importer = OrderImporter()
