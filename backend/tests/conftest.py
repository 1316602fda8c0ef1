"""Shared fixtures: a throwaway SQLite store and in-memory provider fakes."""

import asyncio
from collections import Counter
from typing import Callable, Optional

import pytest

from reelflow.db import DocumentStore, init_database
from reelflow.db.engine import build_engine, build_sessionmaker
from reelflow.errors import MergeError, SubmissionError
from reelflow.orchestrator.poller import PollPolicy
from reelflow.orchestrator.service import WorkflowService
from reelflow.orchestrator.updater import DocumentUpdater
from reelflow.schemas.script import ScriptData
from reelflow.services.generation_client import JobResult, SubmitResult

SCRIPT = {
    "characters": [
        {"name": "Mia", "RoleimagePrompt": "a girl with a red scarf"},
        {"name": "Rex", "imagePrompt": "a scruffy brown dog"},
    ],
    "scenes": [
        {"id": 1, "imagePrompt": "Mia and Rex in a park", "videoPrompt": "Mia throws a ball"},
        {"id": 2, "imagePrompt": "Rex chasing the ball", "videoPrompt": "Rex runs across the grass"},
        {"id": 3, "imagePrompt": "Mia hugging Rex", "videoPrompt": ""},
    ],
}

FAST_POLLS = {
    "image": PollPolicy(0.01, 200),
    "video": PollPolicy(0.01, 200),
    "task": PollPolicy(0.01, 200),
}


class FakeProvider:
    """In-memory generation provider.

    Every submission returns a job handle (or an inline URL with inline=True).
    Jobs succeed after polls_until_done polls unless their prompt is in
    fail_prompts; held=True keeps every job processing and a
    submit_gate event blocks submissions until it is set.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.poll_counts: Counter = Counter()
        self.polls_until_done = 1
        self.fail_prompts: set[str] = set()
        self.reject_prompts: set[str] = set()
        self.inline = False
        self.held = False
        self.script_text = ""
        self.submit_gate: Optional[asyncio.Event] = None
        self.active = 0
        self.peak_active = 0
        self._prompts: dict[str, str] = {}
        self._outputs: dict[str, str] = {}

    @property
    def submissions(self) -> list[tuple[str, dict]]:
        return [c for c in self.calls if c[0] != "generate_script"]

    def _submit(self, method: str, prompt: str, **kwargs) -> SubmitResult:
        self.calls.append((method, {"prompt": prompt, **kwargs}))
        if prompt in self.reject_prompts:
            raise SubmissionError(f"Prompt rejected: {prompt}")
        handle = f"job-{len(self.calls)}"
        ext = "mp4" if method == "image_to_video" else "png"
        self._prompts[handle] = prompt
        self._outputs[handle] = f"https://cdn.test/{handle}.{ext}"
        if self.inline:
            return SubmitResult(output_url=self._outputs[handle])
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        return SubmitResult(job_handle=handle)

    async def _wait_gate(self):
        if self.submit_gate is not None:
            await self.submit_gate.wait()

    async def text_to_image(self, prompt, aspect_ratio="1:1", size="1K"):
        await self._wait_gate()
        return self._submit("text_to_image", prompt, aspect_ratio=aspect_ratio, size=size)

    async def image_to_edit(self, prompt, images, aspect_ratio="9:16", size="1K"):
        await self._wait_gate()
        return self._submit("image_to_edit", prompt, images=list(images), aspect_ratio=aspect_ratio, size=size)

    async def image_to_video(self, model, prompt, first_frame_url, last_frame_url=None):
        await self._wait_gate()
        return self._submit(
            "image_to_video",
            prompt,
            model=model,
            first_frame_url=first_frame_url,
            last_frame_url=last_frame_url,
        )

    async def get_job_result(self, job_handle):
        self.poll_counts[job_handle] += 1
        await asyncio.sleep(0)
        if self.held or self.poll_counts[job_handle] < self.polls_until_done:
            return JobResult(status="processing")
        if job_handle in self._prompts:
            self.active -= 1
        if self._prompts.get(job_handle) in self.fail_prompts:
            return JobResult(status="failed", error="Content rejected")
        output = self._outputs.get(job_handle, f"https://cdn.test/{job_handle}.png")
        return JobResult(status="succeeded", output_url=output)

    async def generate_script(self, video_url, prompt):
        self.calls.append(("generate_script", {"video_url": video_url, "prompt": prompt}))
        return self.script_text


class FakeMergeService:
    def __init__(self):
        self.calls: list[list[str]] = []
        self.error: Optional[str] = None

    async def merge(self, urls):
        self.calls.append(list(urls))
        if self.error:
            raise MergeError(self.error)
        return "https://cdn.test/merged.mp4"


async def wait_for(store: DocumentStore, doc_id, predicate: Callable, timeout: float = 5.0):
    """Poll the stored document until predicate(doc) holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        doc = await store.read(doc_id)
        if predicate(doc):
            return doc
        if loop.time() > deadline:
            raise AssertionError(f"Timed out waiting on {doc_id}: stage={doc.stage} status={doc.status}")
        await asyncio.sleep(0.01)


@pytest.fixture
def script_data() -> ScriptData:
    return ScriptData.model_validate(SCRIPT)


@pytest.fixture
async def engine(tmp_path):
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_database(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def store(engine) -> DocumentStore:
    return DocumentStore(build_sessionmaker(engine))


@pytest.fixture
def updater(store) -> DocumentUpdater:
    return DocumentUpdater(store, max_attempts=50, base_delay=0, max_jitter=0.005)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def merge_service() -> FakeMergeService:
    return FakeMergeService()


@pytest.fixture
async def make_service(store, updater, provider, merge_service):
    """Factory so a test can simulate a restart with a second service."""
    created: list[WorkflowService] = []

    def _make() -> WorkflowService:
        service = WorkflowService(
            store=store,
            provider=provider,
            merge_service=merge_service,
            updater=updater,
            poll_policies=FAST_POLLS,
            batch_cap=5,
        )
        created.append(service)
        return service

    yield _make
    for service in created:
        await service.shutdown()


@pytest.fixture
def service(make_service) -> WorkflowService:
    return make_service()
