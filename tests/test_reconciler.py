import asyncio
import os
import sys
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base
from schemas.order_schemas import CanonicalOrder, Category, DisputeState, OrderView
from services.concurrency_control import ConcurrencyController
from services.reconciler import Reconciler, derive_source_tag, merge_batch, merge_record
from services.storage import StorageService


def order(order_id="#1", state=DisputeState.NONE, risk=False, **kw):
    return CanonicalOrder(id=order_id, dispute_state=state, risk_flag=risk, **kw)


def fold(*orders, owner="shop-a", origin="csv"):
    record = None
    for o in orders:
        record = merge_record(record, o, owner, origin)
    return record


def sticky_view(records):
    return {
        k: (r.latest_dispute_status, r.latest_risk_label, dict(r.sources))
        for k, r in records.items()
    }


# --- pure merge rules ---

def test_dispute_state_never_regresses():
    record = fold(
        order(state=DisputeState.UNDER_REVIEW),
        order(state=DisputeState.NEEDS_RESPONSE),
        order(state=DisputeState.NONE),
    )
    assert record.latest_dispute_status == DisputeState.UNDER_REVIEW
    # snapshot is still last-wins
    assert record.snapshot.dispute_state == DisputeState.NONE


def test_terminal_state_is_never_overwritten():
    record = fold(order(state=DisputeState.WON), order(state=DisputeState.LOST))
    assert record.latest_dispute_status == DisputeState.WON

    record = fold(order(state=DisputeState.LOST), order(state=DisputeState.WON), order(state=DisputeState.NEEDS_RESPONSE))
    assert record.latest_dispute_status == DisputeState.LOST


def test_risk_is_sticky():
    record = fold(order(risk=True), order(risk=False))
    assert record.latest_risk_label == "high"
    assert record.risk_flag is True
    assert fold(order(risk=False)).latest_risk_label is None


def test_sources_only_grow():
    record = fold(
        order(state=DisputeState.NEEDS_RESPONSE, risk=True),
        order(risk=True),
        order(),
    )
    assert record.sources == {"csv-dispute-open": True, "csv-fraud": True, "csv-orders": True}


def test_derive_source_tag():
    assert derive_source_tag(order(state=DisputeState.UNDER_REVIEW, risk=True), "feed") == "feed-dispute-submitted"
    assert derive_source_tag(order(state=DisputeState.WON)) == "csv-dispute-won"
    assert derive_source_tag(order(risk=True), "manual") == "manual-fraud"
    assert derive_source_tag(order()) == "csv-orders"


def test_reimport_is_idempotent():
    batch = [order("#1", DisputeState.NEEDS_RESPONSE, True), order("#2")]
    once = merge_batch({}, batch, "shop-a")
    twice = merge_batch(once, batch, "shop-a")
    assert sticky_view(once) == sticky_view(twice)


def test_batch_partitioning_does_not_change_sticky_fields():
    a = [order("#1", DisputeState.NEEDS_RESPONSE), order("#2", risk=True)]
    b = [order("#1", DisputeState.UNDER_REVIEW), order("#3", DisputeState.WON)]

    def apply(state, batch):
        out = dict(state)
        out.update(merge_batch(state, batch, "shop-a"))
        return out

    whole = apply({}, a + b)
    a_then_b = apply(apply({}, a), b)
    b_then_a = apply(apply({}, b), a)
    assert sticky_view(whole) == sticky_view(a_then_b) == sticky_view(b_then_a)


def test_duplicate_ids_in_one_batch_fold_sequentially():
    merged = merge_batch(
        {},
        [order("#1", DisputeState.UNDER_REVIEW), order("#1", DisputeState.NEEDS_RESPONSE, True)],
        "shop-a",
    )
    assert list(merged) == ["#1"]
    assert merged["#1"].latest_dispute_status == DisputeState.UNDER_REVIEW
    assert merged["#1"].latest_risk_label == "high"


def test_prepare_sees_previous_snapshot():
    seen = []

    def prepare(incoming, previous):
        seen.append(previous.id if previous else None)
        return incoming

    existing = merge_batch({}, [order("#1")], "shop-a")
    merge_batch(existing, [order("#1"), order("#2"), order("#2")], "shop-a", prepare=prepare)
    assert seen == ["#1", None, "#2"]


# --- against a throwaway SQLite database ---

async def make_store():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, StorageService(session_factory=factory)


def test_reconcile_persists_and_merges():
    async def scenario():
        engine, store = await make_store()
        try:
            reconciler = Reconciler(store=store, controller=ConcurrencyController(), chunk_size=2)
            first = await reconciler.reconcile(
                [
                    order("#1", DisputeState.NEEDS_RESPONSE, True, category=Category.DISPUTE_OPEN),
                    order("#2"),
                    order("#3", DisputeState.WON, category=Category.DISPUTE_WON),
                ],
                "Shop-A ",
            )
            assert (first.created, first.updated) == (3, 0)

            second = await reconciler.reconcile([order("#1", tags=["later"])], "shop-a", origin="feed")
            assert (second.created, second.updated) == (0, 1)

            record = await store.get_order("shop-a", "#1")
            assert record.latest_dispute_status == DisputeState.NEEDS_RESPONSE
            assert record.latest_risk_label == "high"
            assert record.sources == {"csv-dispute-open": True, "feed-orders": True}
            assert record.snapshot.tags == ["later"]

            assert await store.get_order("shop-b", "#1") is None

            history = await store.list_orders("shop-a", OrderView.HISTORY)
            assert [r.order_id for r in history] == ["#3"]
            everything = await store.list_orders("shop-a")
            assert sorted(r.order_id for r in everything) == ["#1", "#2", "#3"]
        finally:
            await engine.dispose()

    asyncio.run(scenario())


def test_advisory_lock_is_a_noop_on_sqlite():
    async def scenario():
        engine, store = await make_store()
        try:
            async with store.get_session() as session:
                assert await ConcurrencyController().acquire_transaction_lock(session, "shop-a") is False
        finally:
            await engine.dispose()

    asyncio.run(scenario())


def test_lock_keys_are_stable_and_owner_specific():
    controller = ConcurrencyController()
    key = controller._generate_lock_key("shop-a")
    assert key == controller._generate_lock_key("shop-a")
    assert key != controller._generate_lock_key("shop-b")
    assert 0 <= key <= 2147483647


def test_empty_batch_does_not_touch_storage():
    reconciler = Reconciler(store=StorageService(session_factory=lambda: None))
    result = asyncio.run(reconciler.reconcile([], "shop-a"))
    assert result.records == []
