"""Resume of in-flight items after a restart, and repair of stuck items."""

import asyncio

import pytest

from conftest import wait_for
from reelflow.orchestrator.state import INTERRUPTED_ITEM_ERROR
from reelflow.schemas.inputs import StartWorkflowInput
from reelflow.schemas.workflow import CharacterItem, VideoItem, WorkflowDocument


def _video(i, status, job_handle=None) -> VideoItem:
    return VideoItem(
        id=f"video-{i}",
        index=i,
        prompt=f"clip {i}",
        first_frame_url=f"https://cdn.test/scene-{i + 1}.png",
        status=status,
        job_handle=job_handle,
    )


async def _seed_videos(store) -> WorkflowDocument:
    """A video stage left behind by a previous process."""
    doc = WorkflowDocument(title="Crashed", stage="videos", status="running")
    doc.set_items(
        "video",
        [
            _video(0, "polling", "job-a"),
            _video(1, "polling", "job-b"),
            _video(2, "submitting"),
        ],
    )
    return await store.create(doc)


@pytest.mark.asyncio
async def test_status_read_resumes_polling_without_resubmitting(service, provider):
    doc = await _seed_videos(service.store)

    report = await service.get_status(doc.id)
    stuck = report.document.item_at("video", 2)
    assert (stuck.status, stuck.error) == ("error", INTERRUPTED_ITEM_ERROR)

    await service.wait_background()

    doc = await service.store.read(doc.id)
    assert provider.submissions == []
    assert provider.poll_counts == {"job-a": 1, "job-b": 1}
    assert [v.status for v in doc.items("video")] == ["done", "done", "error"]
    assert doc.item_at("video", 0).output_url == "https://cdn.test/job-a.png"
    assert doc.item_at("video", 0).job_handle is None
    assert (doc.stage, doc.status) == ("videos_done", "waiting")


@pytest.mark.asyncio
async def test_resume_all_on_startup(make_service, store, provider):
    doc = await _seed_videos(store)
    finished = await store.create(WorkflowDocument(stage="completed", status="completed"))

    service = make_service()
    assert await service.resume_all() == 1
    await service.wait_background()

    assert (await store.read(doc.id)).stage == "videos_done"
    assert (await store.read(finished.id)).version == 0
    assert provider.submissions == []


@pytest.mark.asyncio
async def test_interrupted_stage_restarts_pending_items(service, provider):
    doc = WorkflowDocument(stage="characters", status="running")
    doc.set_items(
        "character",
        [
            CharacterItem(id="char-0", name="Mia", prompt="a girl", status="done", output_url="https://cdn.test/mia.png"),
            CharacterItem(id="char-1", name="Rex", prompt="a dog"),
            CharacterItem(id="char-2", name="Tom", prompt="a man", status="error", error="Content rejected"),
        ],
    )
    doc = await service.store.create(doc)

    await service.get_status(doc.id)
    await service.wait_background()

    doc = await service.store.read(doc.id)
    assert [call["prompt"] for _, call in provider.submissions] == ["a dog"]
    assert [c.status for c in doc.items("character")] == ["done", "done", "error"]
    assert doc.stage == "characters_done"


@pytest.mark.asyncio
async def test_interrupted_script_generation_fails(service, provider):
    doc = await service.store.create(
        WorkflowDocument(stage="script", status="running", source_video_url="https://cdn.test/src.mp4")
    )

    report = await service.get_status(doc.id)

    assert (report.document.stage, report.document.status) == ("error", "failed")
    assert report.document.error_message == INTERRUPTED_ITEM_ERROR
    assert provider.calls == []


@pytest.mark.asyncio
async def test_live_submission_is_not_reclassified(service, provider, script_data):
    provider.submit_gate = asyncio.Event()
    doc_id = await service.start_workflow(StartWorkflowInput(script_data=script_data))
    await service.continue_workflow(doc_id)
    await wait_for(service.store, doc_id, lambda d: all(c.status == "generating" for c in d.items("character")))

    report = await service.get_status(doc_id)
    assert all(c.status == "generating" for c in report.document.items("character"))

    provider.submit_gate.set()
    await service.wait_background()

    doc = await service.store.read(doc_id)
    assert all(c.is_done() for c in doc.items("character"))
    assert len(provider.submissions) == 2


@pytest.mark.asyncio
async def test_resume_of_a_stopped_workflow_does_nothing(service, provider):
    doc = await _seed_videos(service.store)
    await service.stop_workflow(doc.id)

    report = await service.get_status(doc.id)
    await service.wait_background()

    assert report.document.stage == "stopped"
    assert not provider.poll_counts


@pytest.mark.asyncio
async def test_interrupted_run_submits_pending_items_while_resuming(service, provider):
    provider.held = True
    doc = WorkflowDocument(stage="characters", status="running")
    doc.set_items(
        "character",
        [
            CharacterItem(id="char-0", name="Mia", prompt="a girl", status="generating", job_handle="old-job"),
            CharacterItem(id="char-1", name="Rex", prompt="a dog"),
        ],
    )
    doc = await service.store.create(doc)

    await service.get_status(doc.id)
    doc = await wait_for(
        service.store,
        doc.id,
        lambda d: d.item_at("character", 1).job_handle is not None and provider.poll_counts["old-job"] > 0,
    )

    assert doc.item_at("character", 0).job_handle == "old-job"
    assert [call["prompt"] for _, call in provider.submissions] == ["a dog"]

    provider.held = False
    await service.wait_background()

    doc = await service.store.read(doc.id)
    assert [c.status for c in doc.items("character")] == ["done", "done"]
    assert doc.item_at("character", 0).output_url == "https://cdn.test/old-job.png"
    assert (doc.stage, doc.status) == ("characters_done", "waiting")


@pytest.mark.asyncio
async def test_overlapping_resumes_poll_each_handle_once(service, provider):
    provider.polls_until_done = 3
    doc = await _seed_videos(service.store)

    first, second = await asyncio.gather(
        service.resume_manager.resume(doc.id),
        service.resume_manager.resume(doc.id),
    )

    assert provider.poll_counts == {"job-a": 3, "job-b": 3}
    assert provider.submissions == []
    assert first.stage == "videos_done"
    assert second.stage == "videos"


@pytest.mark.asyncio
async def test_read_only_status_leaves_unowned_work_alone(service, provider):
    videos = await _seed_videos(service.store)
    script = await service.store.create(
        WorkflowDocument(stage="script", status="running", source_video_url="https://cdn.test/src.mp4")
    )

    for doc in (videos, script):
        report = await service.get_status(doc.id, repair=False)
        assert report.document.version == doc.version
    await service.wait_background()

    assert (await service.store.read(videos.id)).item_at("video", 2).status == "submitting"
    assert (await service.store.read(script.id)).stage == "script"
    assert not provider.poll_counts
    assert service.registry.peek(videos.id) is None


@pytest.mark.asyncio
async def test_finished_runs_leave_no_context_behind(service, script_data):
    doc_id = await service.start_workflow(StartWorkflowInput(script_data=script_data))
    await service.continue_workflow(doc_id)
    assert service.registry.peek(doc_id) is not None
    await service.wait_background()

    assert service.registry.peek(doc_id) is None
    report = await service.get_status(doc_id)
    assert report.document.stage == "characters_done"
    assert service.registry.peek(doc_id) is None
