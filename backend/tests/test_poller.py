"""Tests for job polling and batch execution."""

import asyncio

import httpx
import pytest

from reelflow.errors import Cancelled, PollingTimeout, ProviderError
from reelflow.orchestrator.batch import run_batch
from reelflow.orchestrator.poller import PollPolicy, ResultPoller
from reelflow.services.generation_client import JobResult

PROCESSING = JobResult(status="processing")


class ScriptedProvider:
    """Replays a fixed sequence of poll responses, then keeps processing."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def get_job_result(self, job_handle):
        self.calls += 1
        response = self.responses.pop(0) if self.responses else PROCESSING
        if isinstance(response, Exception):
            raise response
        return response


def _poller(provider, interval=0.01, attempts=5) -> ResultPoller:
    return ResultPoller(provider, {"image": PollPolicy(interval, attempts)})


def _always() -> bool:
    return True


# ---------------------------------------------------------------------------
# ResultPoller
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_poll_returns_output_on_success():
    provider = ScriptedProvider(PROCESSING, JobResult(status="SUCCEEDED", output_url="https://cdn.test/a.png"))

    url = await _poller(provider).poll("job-1", "image", _always)
    assert url == "https://cdn.test/a.png"
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_poll_raises_provider_error_on_failure():
    provider = ScriptedProvider(JobResult(status="failed", error="NSFW content"))

    with pytest.raises(ProviderError, match="NSFW content"):
        await _poller(provider).poll("job-1", "image", _always)


@pytest.mark.asyncio
async def test_poll_success_without_url_is_an_error():
    provider = ScriptedProvider(JobResult(status="completed"))

    with pytest.raises(ProviderError, match="no output URL"):
        await _poller(provider).poll("job-1", "image", _always)


@pytest.mark.asyncio
async def test_poll_times_out_after_max_attempts():
    provider = ScriptedProvider()

    with pytest.raises(PollingTimeout):
        await _poller(provider, attempts=3).poll("job-1", "image", _always)
    assert provider.calls == 3


@pytest.mark.asyncio
async def test_transient_errors_consume_attempts():
    provider = ScriptedProvider(
        httpx.ConnectError("connection reset"),
        ValueError("bad json"),
        JobResult(status="succeeded", output_url="https://cdn.test/b.png"),
    )

    assert await _poller(provider).poll("job-1", "image", _always) == "https://cdn.test/b.png"
    assert provider.calls == 3

    failing = ScriptedProvider(*(httpx.ConnectError("down") for _ in range(3)))
    with pytest.raises(PollingTimeout):
        await _poller(failing, attempts=3).poll("job-1", "image", _always)


@pytest.mark.asyncio
async def test_poll_checks_continue_before_each_query():
    provider = ScriptedProvider()

    with pytest.raises(Cancelled):
        await _poller(provider).poll("job-1", "image", lambda: False)
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_cancel_event_wakes_the_sleep():
    provider = ScriptedProvider()
    event = asyncio.Event()
    poller = _poller(provider, interval=30, attempts=5)

    async def stop_soon():
        await asyncio.sleep(0.02)
        event.set()

    stopper = asyncio.create_task(stop_soon())
    with pytest.raises(Cancelled):
        await asyncio.wait_for(
            poller.poll("job-1", "image", lambda: not event.is_set(), event), timeout=2
        )
    await stopper
    assert provider.calls == 1


# ---------------------------------------------------------------------------
# run_batch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_batch_runs_groups_of_cap():
    active = 0
    peak = 0
    finished: list[int] = []
    finished_before_start: dict[int, set] = {}

    async def work(i):
        nonlocal active, peak
        finished_before_start[i] = set(finished)
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        finished.append(i)
        return i * 10

    results = await run_batch(list(range(7)), work, cap=5)

    assert peak == 5
    assert finished_before_start[5] == {0, 1, 2, 3, 4}
    assert [r.index for r in results] == list(range(7))
    assert [r.value for r in results] == [i * 10 for i in range(7)]


@pytest.mark.asyncio
async def test_run_batch_isolates_failures():
    async def work(i):
        if i == 2:
            raise RuntimeError("boom")
        return i

    results = await run_batch(list(range(4)), work)

    assert [r.ok for r in results] == [True, True, False, True]
    assert isinstance(results[2].error, RuntimeError)


@pytest.mark.asyncio
async def test_run_batch_skips_remaining_groups_when_stopped():
    started: list[int] = []
    keep_going = True

    async def work(i):
        nonlocal keep_going
        started.append(i)
        keep_going = False

    results = await run_batch(list(range(7)), work, cap=5, should_continue=lambda: keep_going)

    assert sorted(started) == [0, 1, 2, 3, 4]
    assert [r.index for r in results if r.skipped] == [5, 6]


@pytest.mark.asyncio
async def test_run_batch_rejects_bad_cap():
    async def work(i):
        return i

    with pytest.raises(ValueError):
        await run_batch([1], work, cap=0)
    assert await run_batch([], work) == []
