"""Contract tests run against both queue backends."""

import asyncio

import pytest

from models.job import COMPLETED, FAILED, PENDING, PROCESSING, ScrapeRequest
from workers.queue import STALE_JOB_ERROR, InMemoryJobQueue, SQLiteJobQueue


@pytest.fixture(params=["memory", "sqlite"])
def queue(request):
    if request.param == "sqlite":
        request.getfixturevalue("db")
        return SQLiteJobQueue()
    return InMemoryJobQueue()


def _req(url="https://example.com/watch?v=abc", **kw):
    return ScrapeRequest(source_url=url, **kw)


def test_create_is_immediately_pending(queue):
    async def scenario():
        job_id = await queue.create(_req(user_id=1, tags=["a", "b"]))
        return job_id, await queue.get(job_id)

    job_id, job = asyncio.run(scenario())
    assert job.job_id == job_id
    assert job.status == PENDING
    assert job.result is None
    assert job.request.user_id == 1
    assert job.request.tags == ["a", "b"]
    assert job.created_at and job.updated_at


def test_ids_are_unique_even_for_same_url(queue):
    async def scenario():
        return [await queue.create(_req()) for _ in range(25)]

    ids = asyncio.run(scenario())
    assert len(set(ids)) == 25


def test_get_unknown_returns_none(queue):
    assert asyncio.run(queue.get("does-not-exist")) is None


def test_claim_succeeds_once(queue):
    async def scenario():
        job_id = await queue.create(_req())
        first = await queue.claim(job_id)
        second = await queue.claim(job_id)
        return first, second, await queue.get(job_id)

    first, second, job = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert job.status == PROCESSING


def test_concurrent_claims_have_exactly_one_winner(queue):
    async def scenario():
        job_id = await queue.create(_req())
        return await asyncio.gather(*(queue.claim(job_id) for _ in range(8)))

    results = asyncio.run(scenario())
    assert results.count(True) == 1
    assert results.count(False) == 7


def test_claim_unknown_job_is_false(queue):
    assert asyncio.run(queue.claim("nope")) is False


def test_complete_requires_processing(queue):
    async def scenario():
        job_id = await queue.create(_req())
        early = await queue.complete(job_id, {"video_id": 1})
        await queue.claim(job_id)
        done = await queue.complete(job_id, {"video_id": 1})
        again = await queue.complete(job_id, {"video_id": 2})
        late_fail = await queue.fail(job_id, "download: network: boom")
        return early, done, again, late_fail, await queue.get(job_id)

    early, done, again, late_fail, job = asyncio.run(scenario())
    assert (early, done, again, late_fail) == (False, True, False, False)
    assert job.status == COMPLETED
    assert job.response == {"video_id": 1}
    assert job.error is None


def test_fail_sets_only_error(queue):
    async def scenario():
        job_id = await queue.create(_req())
        await queue.claim(job_id)
        await queue.fail(job_id, "download: timeout: yt-dlp exceeded 1s")
        reclaim = await queue.claim(job_id)
        return reclaim, await queue.get(job_id)

    reclaim, job = asyncio.run(scenario())
    assert reclaim is False
    assert job.status == FAILED
    assert job.error == "download: timeout: yt-dlp exceeded 1s"
    assert job.response is None


def test_updated_at_moves_with_each_transition(queue):
    async def scenario():
        job_id = await queue.create(_req())
        created = await queue.get(job_id)
        await queue.claim(job_id)
        claimed = await queue.get(job_id)
        await queue.complete(job_id, {"video_id": 3})
        done = await queue.get(job_id)
        return created, claimed, done

    created, claimed, done = asyncio.run(scenario())
    assert created.updated_at <= claimed.updated_at <= done.updated_at
    assert done.created_at == created.created_at


def test_pending_ids_skip_claimed_jobs(queue):
    async def scenario():
        a = await queue.create(_req())
        b = await queue.create(_req())
        await queue.claim(a)
        return b, await queue.pending_ids()

    b, pending = asyncio.run(scenario())
    assert pending == [b]


def test_recover_stale_fails_processing_jobs(queue):
    async def scenario():
        a = await queue.create(_req())
        b = await queue.create(_req())
        await queue.claim(a)
        stale = await queue.recover_stale()
        return a, b, stale, await queue.get(a), await queue.get(b)

    a, b, stale, job_a, job_b = asyncio.run(scenario())
    assert stale == [a]
    assert job_a.status == FAILED
    assert job_a.error == STALE_JOB_ERROR
    assert job_b.status == PENDING
