import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeAdmin, FakeGenerator, product_gid, read_balance, seed_shop, collection_gid
from services.job_admission import admit_bulk_job
from services.job_store import JobStore
from services.job_worker import INTERRUPTED_JOB_MESSAGE, STALLED_JOB_MESSAGE, BulkJobWorker

SHOP = "worker.myshopify.com"
CONTENT_FIELDS = ["title", "description", "meta_title"]


def _worker(session_maker, admin=None, generator=None, **kwargs):
    admin = admin or FakeAdmin()

    async def _admin_factory(shop_domain, session_id, maker):
        return admin

    return BulkJobWorker(
        session_maker=session_maker,
        generator=generator or FakeGenerator(),
        admin_client_factory=_admin_factory,
        interval_seconds=kwargs.pop("interval_seconds", 0.01),
        call_timeout_seconds=kwargs.pop("call_timeout_seconds", 5),
        **kwargs,
    )


async def _queue_products_job(session_maker, count=10, fields=None, shop=SHOP):
    async with session_maker() as db:
        return await admit_bulk_job(
            shop,
            db,
            product_ids=[product_gid(n) for n in range(1, count + 1)],
            settings_payload={"fields": fields or CONTENT_FIELDS},
            session_maker=session_maker,
        )


@pytest.mark.asyncio
async def test_successful_job_completes_and_keeps_reservation(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker)
    admin = FakeAdmin()
    worker = _worker(session_maker, admin=admin)

    assert await worker.run_next_job() == job.id

    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert stored.processed_items == 30
    assert stored.failed_targets == 0
    assert stored.started_at is not None
    assert stored.completed_at is not None
    assert len(admin.product_updates) == 10
    assert admin.product_updates[0] == {
        "id": product_gid(1),
        "title": "New title",
        "descriptionHtml": "<p>New description</p>",
        "seo": {"title": "Meta title"},
    }
    assert await read_balance(session_maker, SHOP) == 70


@pytest.mark.asyncio
async def test_unconfigured_generator_fails_job_and_refunds(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker)
    assert await read_balance(session_maker, SHOP) == 70

    worker = _worker(session_maker, generator=FakeGenerator(configured=False))
    await worker.run_next_job()

    stored = await worker.store.get_job(job.id)
    assert stored.status == "failed"
    assert "not configured" in stored.error_message
    assert await read_balance(session_maker, SHOP) == 100


@pytest.mark.asyncio
async def test_fatal_error_mid_job_refunds_full_cost(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker)
    admin = FakeAdmin()

    worker = _worker(session_maker, admin=admin, generator=FakeGenerator(fail_after=3))
    await worker.run_next_job()

    stored = await worker.store.get_job(job.id)
    assert stored.status == "failed"
    assert "quota" in stored.error_message
    assert len(admin.product_updates) == 3
    assert stored.processed_items < stored.total_items
    assert await read_balance(session_maker, SHOP) == 100


@pytest.mark.asyncio
async def test_per_target_failures_do_not_fail_the_job(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker, count=4, fields=["title"])
    admin = FakeAdmin(missing={product_gid(2)}, failing_updates={product_gid(3)})

    worker = _worker(session_maker, admin=admin)
    await worker.run_next_job()

    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert stored.processed_items == 4
    assert stored.failed_targets == 2
    assert [update["id"] for update in admin.product_updates] == [product_gid(1), product_gid(4)]
    assert await read_balance(session_maker, SHOP) == 96


@pytest.mark.asyncio
async def test_slow_external_calls_time_out_per_target(session_maker):
    class SlowAdmin(FakeAdmin):
        async def fetch_product(self, product_id):
            await asyncio.sleep(1)
            return await super().fetch_product(product_id)

    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker, count=2, fields=["title"])

    worker = _worker(session_maker, admin=SlowAdmin(), call_timeout_seconds=0.05)
    await worker.run_next_job()

    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert stored.failed_targets == 2
    assert stored.processed_items == 2


@pytest.mark.asyncio
async def test_collections_job_updates_collections(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    async with session_maker() as db:
        job = await admit_bulk_job(
            SHOP,
            db,
            collection_ids=[collection_gid(1), collection_gid(2)],
            settings_payload={"fields": ["description", "meta_description"]},
            session_maker=session_maker,
        )
    admin = FakeAdmin()

    worker = _worker(session_maker, admin=admin)
    await worker.run_next_job()

    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert stored.processed_items == 4
    assert admin.collection_updates[0] == {
        "id": collection_gid(1),
        "descriptionHtml": "<p>New description</p>",
        "seo": {"description": "Meta description"},
    }


@pytest.mark.asyncio
async def test_alt_text_job_updates_each_selected_image(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    p1, p2, p3 = product_gid(1), product_gid(2), product_gid(3)
    admin = FakeAdmin(
        missing={p2},
        images={
            p1: [
                {"id": "gid://shopify/ProductImage/11", "url": "https://cdn.test/11.jpg", "alt_text": ""},
                {"id": "gid://shopify/ProductImage/12", "url": "https://cdn.test/12.jpg", "alt_text": "old"},
            ],
            p3: [{"id": "gid://shopify/ProductImage/31", "url": "https://cdn.test/31.jpg", "alt_text": ""}],
        },
    )
    async with session_maker() as db:
        job = await admit_bulk_job(
            SHOP,
            db,
            product_ids=[p1, p2, p3],
            settings_payload={"fields": ["alt_text"], "image_scope": "all", "image_counts": {p1: 2, p3: 1}},
            session_maker=session_maker,
        )
    assert job.total_items == 4

    worker = _worker(session_maker, admin=admin)
    await worker.run_next_job()

    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert stored.processed_items == 4
    assert stored.failed_targets == 1
    assert [update[1] for update in admin.alt_updates] == [
        "gid://shopify/ProductImage/11",
        "gid://shopify/ProductImage/12",
        "gid://shopify/ProductImage/31",
    ]
    assert admin.alt_updates[0][2] == "Blue ceramic mug on a wooden table"
    assert await read_balance(session_maker, SHOP) == 96


@pytest.mark.asyncio
async def test_jobs_are_claimed_oldest_first_across_shops(session_maker):
    other_shop = "second.myshopify.com"
    await seed_shop(session_maker, SHOP, balance=100)
    await seed_shop(session_maker, other_shop, balance=100)
    first = await _queue_products_job(session_maker, count=1, fields=["title"], shop=other_shop)
    second = await _queue_products_job(session_maker, count=1, fields=["title"])

    worker = _worker(session_maker)

    assert await worker.run_next_job() == first.id
    assert await worker.run_next_job() == second.id
    assert await worker.run_next_job() is None


@pytest.mark.asyncio
async def test_unknown_job_variant_fails_and_refunds(session_maker):
    await seed_shop(session_maker, SHOP, balance=90)
    store = JobStore(session_maker)
    async with session_maker() as db:
        job = await store.create_job(
            db,
            shop_domain=SHOP,
            job_type="products",
            task="translation",
            config={"product_ids": [product_gid(1)], "credit_cost": 10},
            total_items=10,
        )

    worker = _worker(session_maker)
    await worker.run_next_job()

    stored = await worker.store.get_job(job.id)
    assert stored.status == "failed"
    assert "Unsupported bulk job type" in stored.error_message
    assert await read_balance(session_maker, SHOP) == 100


@pytest.mark.asyncio
async def test_run_loop_ticks_until_stopped(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker, count=2, fields=["title"])
    stop_event = asyncio.Event()
    sleeps = []

    async def _fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= 2:
            stop_event.set()

    worker = _worker(session_maker, sleep=_fake_sleep, interval_seconds=5)
    await worker.run(stop_event)

    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert sleeps == [5, 5]


@pytest.mark.asyncio
async def test_run_loop_survives_failing_tick(session_maker):
    stop_event = asyncio.Event()
    ticks = []

    async def _fake_sleep(seconds):
        if len(ticks) >= 2:
            stop_event.set()

    worker = _worker(session_maker, sleep=_fake_sleep)

    async def _broken_tick():
        ticks.append(1)
        raise RuntimeError("database went away")

    worker.run_next_job = _broken_tick
    await worker.run(stop_event)

    assert len(ticks) == 2


@pytest.mark.asyncio
async def test_start_and_stop_background_task(session_maker):
    worker = _worker(session_maker, interval_seconds=0.01)

    task = worker.start()
    assert worker.start() is task
    await asyncio.sleep(0.05)
    await worker.stop()

    assert task.done()


@pytest.mark.asyncio
async def test_stalled_running_jobs_are_failed_and_refunded_once(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker)
    started_long_ago = datetime.now(timezone.utc) - timedelta(hours=5)

    stale_store = JobStore(session_maker, clock=lambda: started_long_ago)
    claimed = await stale_store.claim_next_job()
    assert claimed.id == job.id

    worker = _worker(session_maker)
    assert await worker.recover_stalled_jobs(max_age_minutes=120) == 1
    assert await worker.recover_stalled_jobs(max_age_minutes=120) == 0

    stored = await worker.store.get_job(job.id)
    assert stored.status == "failed"
    assert stored.error_message == STALLED_JOB_MESSAGE
    assert await read_balance(session_maker, SHOP) == 100


@pytest.mark.asyncio
async def test_recent_running_jobs_are_not_recovered(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    await _queue_products_job(session_maker)
    worker = _worker(session_maker)
    await worker.store.claim_next_job()

    assert await worker.recover_stalled_jobs(max_age_minutes=120) == 0
    assert await read_balance(session_maker, SHOP) == 70


class HangingAdmin(FakeAdmin):
    """Blocks on the first product fetch until the task running it is cancelled."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = asyncio.Event()

    async def fetch_product(self, product_id):
        self.entered.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_stopping_mid_job_fails_the_job_and_refunds(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker)
    admin = HangingAdmin()
    worker = _worker(session_maker, admin=admin, call_timeout_seconds=60)

    worker.start()
    await asyncio.wait_for(admin.entered.wait(), timeout=5)
    assert await read_balance(session_maker, SHOP) == 70
    await worker.stop(grace_seconds=0.05)

    stored = await worker.store.get_job(job.id)
    assert stored.status == "failed"
    assert stored.error_message == INTERRUPTED_JOB_MESSAGE
    assert await read_balance(session_maker, SHOP) == 100

    restarted = _worker(session_maker)
    assert await restarted.recover_stalled_jobs() == 0
    assert await restarted.run_next_job() is None
    assert await read_balance(session_maker, SHOP) == 100


@pytest.mark.asyncio
async def test_stop_lets_an_in_flight_job_finish_within_grace(session_maker):
    class SlowAdmin(FakeAdmin):
        def __init__(self):
            super().__init__()
            self.entered = asyncio.Event()

        async def fetch_product(self, product_id):
            self.entered.set()
            await asyncio.sleep(0.05)
            return await super().fetch_product(product_id)

    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker, count=2, fields=["title"])
    admin = SlowAdmin()
    worker = _worker(session_maker, admin=admin)

    worker.start()
    await asyncio.wait_for(admin.entered.wait(), timeout=5)
    await worker.stop(grace_seconds=5)

    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert len(admin.product_updates) == 2
    assert await read_balance(session_maker, SHOP) == 98


@pytest.mark.asyncio
async def test_run_loop_sweeps_stalled_jobs_between_ticks(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker)
    started_long_ago = datetime.now(timezone.utc) - timedelta(hours=5)
    await JobStore(session_maker, clock=lambda: started_long_ago).claim_next_job()

    now = [datetime.now(timezone.utc)]
    stop_event = asyncio.Event()
    sleeps = []

    async def _fake_sleep(seconds):
        sleeps.append(seconds)
        now[0] += timedelta(seconds=61)
        if len(sleeps) >= 2:
            stop_event.set()

    worker = _worker(session_maker, sleep=_fake_sleep, clock=lambda: now[0], sweep_interval_seconds=60)
    await worker.run(stop_event)

    stored = await worker.store.get_job(job.id)
    assert stored.status == "failed"
    assert stored.error_message == STALLED_JOB_MESSAGE
    assert await read_balance(session_maker, SHOP) == 100


@pytest.mark.asyncio
async def test_completion_write_failure_is_left_for_the_sweep(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    job = await _queue_products_job(session_maker, count=2, fields=["title"])
    worker = _worker(session_maker)

    with patch.object(worker.store, "mark_completed", AsyncMock(side_effect=RuntimeError("connection reset"))):
        assert await worker.run_next_job() == job.id

    assert (await worker.store.get_job(job.id)).status == "running"

    later = datetime.now(timezone.utc) + timedelta(hours=3)
    sweeper = _worker(session_maker, clock=lambda: later)
    assert await sweeper.recover_stalled_jobs(max_age_minutes=120) == 1

    stored = await sweeper.store.get_job(job.id)
    assert stored.status == "failed"
    assert await read_balance(session_maker, SHOP) == 100


@pytest.mark.asyncio
async def test_alt_text_progress_never_decreases_or_passes_total(session_maker):
    class ProgressRecordingAdmin(FakeAdmin):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            self.store = None
            self.job_id = None
            self.observed = []

        async def _observe(self):
            stored = await self.store.get_job(self.job_id)
            self.observed.append(stored.processed_items)

        async def fetch_product_images(self, product_id):
            await self._observe()
            return await super().fetch_product_images(product_id)

        async def update_image_alt(self, product_id, image_id, alt_text):
            await self._observe()
            await super().update_image_alt(product_id, image_id, alt_text)

    await seed_shop(session_maker, SHOP, balance=100)
    p1, p2 = product_gid(1), product_gid(2)
    admin = ProgressRecordingAdmin(
        images={
            p1: [
                {"id": f"gid://shopify/ProductImage/1{n}", "url": f"https://cdn.test/1{n}.jpg", "alt_text": ""}
                for n in range(3)
            ],
            p2: [
                {"id": f"gid://shopify/ProductImage/2{n}", "url": f"https://cdn.test/2{n}.jpg", "alt_text": ""}
                for n in range(2)
            ],
        },
    )
    async with session_maker() as db:
        job = await admit_bulk_job(
            SHOP,
            db,
            product_ids=[p1, p2],
            settings_payload={"fields": ["alt_text"], "image_scope": "all", "image_counts": {p1: 1, p2: 1}},
            session_maker=session_maker,
        )
    assert job.total_items == 2

    worker = _worker(session_maker, admin=admin)
    admin.store = worker.store
    admin.job_id = job.id
    await worker.run_next_job()

    assert len(admin.alt_updates) == 5
    assert admin.observed == sorted(admin.observed)
    assert admin.observed[0] == 0
    assert max(admin.observed) == job.total_items
    stored = await worker.store.get_job(job.id)
    assert stored.status == "completed"
    assert stored.processed_items == stored.total_items


@pytest.mark.asyncio
async def test_stored_progress_is_capped_and_only_moves_while_running(session_maker):
    await seed_shop(session_maker, SHOP, balance=100)
    store = JobStore(session_maker)
    async with session_maker() as db:
        job = await store.create_job(
            db,
            shop_domain=SHOP,
            job_type="products",
            task="content",
            config={"product_ids": [product_gid(1)], "fields": ["title"], "credit_cost": 3},
            total_items=3,
        )

    await store.increment_progress(job.id, 2)
    assert (await store.get_job(job.id)).processed_items == 0

    await store.claim_next_job()
    await store.increment_progress(job.id, 2)
    assert (await store.get_job(job.id)).processed_items == 2
    await store.increment_progress(job.id, 5)
    assert (await store.get_job(job.id)).processed_items == 3
    await store.increment_progress(job.id, -1)
    assert (await store.get_job(job.id)).processed_items == 3

    await store.mark_failed(job.id, "stopped")
    await store.increment_progress(job.id, 1)
    assert (await store.get_job(job.id)).processed_items == 3
