"""
Order Reconciler
Merge-upsert of canonical orders into the persisted ledger.

Per (owner, id):
- dispute status never moves down the rank table; WON and LOST share the top
  rank, so whichever terminal state lands first stays
- the risk flag is sticky once raised
- sources only grow
- the snapshot is replaced wholesale by the incoming order

The whole read-merge-upsert for a batch runs in one transaction and is retried
as a unit on transient failures. Re-applying a batch is a no-op for the sticky
fields, so at-least-once delivery is safe.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
import logging
import time

from sqlalchemy.exc import IntegrityError

from schemas.order_schemas import (
    CanonicalOrder,
    DisputeState,
    PersistedOrderRecord,
    dispute_rank,
)
from services.concurrency_control import ConcurrencyController, concurrency_controller
from services.errors import MergeConflictError
from services.storage import StorageService, storage
from settings import RECONCILE_CHUNK_SIZE, RECONCILE_MAX_RETRIES, require_owner_id
from utils import retry_async

logger = logging.getLogger(__name__)

ORIGINS = ("csv", "feed", "manual", "revalidate")

SOURCE_LABELS: Dict[DisputeState, str] = {
    DisputeState.NEEDS_RESPONSE: "dispute-open",
    DisputeState.UNDER_REVIEW: "dispute-submitted",
    DisputeState.WON: "dispute-won",
    DisputeState.LOST: "dispute-lost",
}

# (incoming order, previous snapshot or None) -> order to merge
PrepareFn = Callable[[CanonicalOrder, Optional[CanonicalOrder]], CanonicalOrder]


def risk_label(flag: bool) -> Optional[str]:
    return "high" if flag else None


def derive_source_tag(order: CanonicalOrder, origin: str = "csv") -> str:
    """Provenance tag, e.g. ``csv-dispute-open``, ``feed-fraud``, ``csv-orders``."""
    label = SOURCE_LABELS.get(order.dispute_state)
    if label is None:
        label = "fraud" if order.risk_flag else "orders"
    return f"{origin}-{label}"


def merge_record(
    existing: Optional[PersistedOrderRecord],
    incoming: CanonicalOrder,
    owner_id: str,
    origin: str = "csv",
) -> PersistedOrderRecord:
    """Fold one incoming order into its persisted record (pure)."""
    if existing is None:
        dispute = incoming.dispute_state
        risk = incoming.risk_flag
        sources: Dict[str, bool] = {}
    else:
        if dispute_rank(existing.latest_dispute_status) >= dispute_rank(incoming.dispute_state):
            dispute = existing.latest_dispute_status
        else:
            dispute = incoming.dispute_state
        risk = existing.risk_flag or incoming.risk_flag
        sources = dict(existing.sources)

    sources[derive_source_tag(incoming, origin)] = True

    return PersistedOrderRecord(
        owner_id=owner_id,
        order_id=incoming.id,
        latest_dispute_status=dispute,
        latest_risk_label=risk_label(risk),
        sources=sources,
        snapshot=incoming,
    )


def merge_batch(
    existing: Dict[str, PersistedOrderRecord],
    batch: Sequence[CanonicalOrder],
    owner_id: str,
    origin: str = "csv",
    prepare: Optional[PrepareFn] = None,
) -> Dict[str, PersistedOrderRecord]:
    """Merge a batch in order; repeated ids fold into each other sequentially."""
    merged: Dict[str, PersistedOrderRecord] = {}
    for order in batch:
        current = merged.get(order.id) or existing.get(order.id)
        if prepare is not None:
            order = prepare(order, current.snapshot if current is not None else None)
        merged[order.id] = merge_record(current, order, owner_id, origin)
    return merged


@dataclass
class ReconcileResult:
    records: List[PersistedOrderRecord] = field(default_factory=list)
    created: int = 0
    updated: int = 0


class Reconciler:
    """Sole writer of the ``orders`` table."""

    def __init__(
        self,
        store: Optional[StorageService] = None,
        controller: Optional[ConcurrencyController] = None,
        chunk_size: int = RECONCILE_CHUNK_SIZE,
        max_retries: int = RECONCILE_MAX_RETRIES,
        retry_base_delay: float = 0.5,
    ):
        self.store = store or storage
        self.controller = controller or concurrency_controller
        self.chunk_size = chunk_size
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def reconcile(
        self,
        batch: Sequence[CanonicalOrder],
        owner_id: str,
        origin: str = "csv",
        prepare: Optional[PrepareFn] = None,
    ) -> ReconcileResult:
        """Merge ``batch`` into the owner's ledger.

        ``prepare`` runs inside the transaction with each order's previously
        persisted snapshot; the importer uses it to validate against the state
        it is about to overwrite.
        """
        owner_id = require_owner_id(owner_id)
        if origin not in ORIGINS:
            raise ValueError(f"Unknown origin {origin!r}")
        if not batch:
            return ReconcileResult()

        attempt = retry_async(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            retry_on=(MergeConflictError,),
        )(self._reconcile_once)
        return await attempt(list(batch), owner_id, origin, prepare)

    async def _reconcile_once(
        self,
        batch: List[CanonicalOrder],
        owner_id: str,
        origin: str,
        prepare: Optional[PrepareFn],
    ) -> ReconcileResult:
        start = time.time()
        ids = list(dict.fromkeys(o.id for o in batch))
        async with self.store.get_session() as session:
            try:
                async with session.begin():
                    await self.controller.acquire_transaction_lock(session, owner_id)
                    existing = await self.store.get_order_records(session, owner_id, ids, self.chunk_size)
                    merged = merge_batch(existing, batch, owner_id, origin, prepare)
                    await self.store.upsert_order_records(session, list(merged.values()), self.chunk_size)
            except IntegrityError as e:
                raise MergeConflictError(f"Concurrent write for owner {owner_id}: {e.orig}") from e

        created = sum(1 for order_id in merged if order_id not in existing)
        logger.info(
            f"Reconciled owner={owner_id} origin={origin} orders={len(merged)} "
            f"created={created} updated={len(merged) - created} in {time.time() - start:.2f}s"
        )
        return ReconcileResult(
            records=list(merged.values()),
            created=created,
            updated=len(merged) - created,
        )


reconciler = Reconciler()
