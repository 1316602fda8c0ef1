"""Tests for the document store and the optimistic-concurrency updater."""

import asyncio
import uuid

import pytest

from reelflow.config import UpdaterConfig, settings
from reelflow.errors import ConflictError, NotFoundError, ValidationError
from reelflow.orchestrator import updater as updater_module
from reelflow.orchestrator.updater import DocumentUpdater, apply_with_optimistic_retry
from reelflow.schemas.script import character_items, scene_items
from reelflow.schemas.workflow import CharacterItem, WorkflowDocument


def _document(script_data=None, characters: int = 0) -> WorkflowDocument:
    doc = WorkflowDocument(title="Park day", stage="script_done", status="waiting")
    if script_data is not None:
        doc.set_items("character", character_items(script_data))
        doc.set_items("scene", scene_items(script_data))
    if characters:
        doc.set_items(
            "character",
            [CharacterItem(id=f"char-{i}", name=f"C{i}", prompt=f"character {i}") for i in range(characters)],
        )
    return doc


class StaleStore:
    """Store wrapper whose conditional writes always lose the race."""

    def __init__(self, store):
        self.store = store
        self.writes = 0

    async def read(self, doc_id):
        return await self.store.read(doc_id)

    async def write_if_version(self, doc, expected_version):
        self.writes += 1
        return None


# ---------------------------------------------------------------------------
# DocumentStore
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_and_read_keeps_item_order(store, script_data):
    created = await store.create(_document(script_data))

    doc = await store.read(created.id)
    assert doc.version == 0
    assert doc.created_at is not None
    assert list(doc.characters) == ["char-0", "char-1"]
    assert list(doc.scenes) == ["scene-1", "scene-2", "scene-3"]
    assert doc.item_at("character", 0).prompt == "a girl with a red scarf"
    assert doc.dump_ordered()["scenes"][2]["id"] == "scene-3"


@pytest.mark.asyncio
async def test_read_missing_document(store):
    with pytest.raises(NotFoundError):
        await store.read(uuid.uuid4())


@pytest.mark.asyncio
async def test_write_if_version_rejects_stale_version(store, script_data):
    doc = await store.create(_document(script_data))

    doc.title = "First"
    written = await store.write_if_version(doc, 0)
    assert written.version == 1

    doc.title = "Second"
    assert await store.write_if_version(doc, 0) is None
    assert (await store.read(doc.id)).title == "First"


@pytest.mark.asyncio
async def test_delete_and_list(store, script_data):
    first = await store.create(_document(script_data))
    batch = WorkflowDocument(kind="image_batch", stage="idle", status="running")
    await store.create(batch)

    assert {d.id for d in await store.list()} == {first.id, batch.id}
    assert [d.id for d in await store.list(kind="image_batch")] == [batch.id]
    assert [d.id for d in await store.list(statuses={"waiting"})] == [first.id]

    await store.delete(first.id)
    with pytest.raises(NotFoundError):
        await store.delete(first.id)


# ---------------------------------------------------------------------------
# Optimistic updates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_disjoint_patches_all_land(store, updater):
    doc = await store.create(_document(characters=10))

    await asyncio.gather(
        *(
            updater.apply_patch(doc.id, "character", i, {"status": "done", "output_url": f"https://cdn.test/{i}.png"})
            for i in range(10)
        )
    )

    final = await store.read(doc.id)
    assert final.version == 10
    assert [c.output_url for c in final.items("character")] == [f"https://cdn.test/{i}.png" for i in range(10)]


@pytest.mark.asyncio
async def test_conflict_exhaustion_raises(store):
    doc = await store.create(_document(characters=1))
    stale = StaleStore(store)

    with pytest.raises(ConflictError, match="Update conflict, please retry"):
        await apply_with_optimistic_retry(
            stale, doc.id, lambda d: True, max_attempts=3, base_delay=0, max_jitter=0
        )
    assert stale.writes == 3


@pytest.mark.asyncio
async def test_conflict_backoff_follows_default_policy(store, monkeypatch):
    delays = []

    async def record(seconds):
        delays.append(seconds)

    monkeypatch.setattr(settings, "updater", UpdaterConfig())
    monkeypatch.setattr(updater_module, "backoff_sleep", record)
    doc = await store.create(_document(characters=1))
    stale = StaleStore(store)

    with pytest.raises(ConflictError):
        await DocumentUpdater(stale).mutate(doc.id, lambda d: True)

    assert stale.writes == 5
    assert len(delays) == 4
    for attempt, delay in enumerate(delays, start=1):
        base = 0.1 * 2 ** (attempt - 1)
        assert base - 1e-9 <= delay <= base + 0.05 + 1e-9


@pytest.mark.asyncio
async def test_declined_mutation_skips_write(store, updater):
    doc = await store.create(_document(characters=1))

    assert await updater.mutate(doc.id, lambda d: False) is None
    assert (await store.read(doc.id)).version == 0


@pytest.mark.asyncio
async def test_conditional_patch_skips_unexpected_status(store, updater):
    doc = await store.create(_document(characters=1))

    skipped = await updater.apply_patch(
        doc.id, "character", 0, {"status": "done", "output_url": "https://cdn.test/x.png"},
        expect_in={"generating"},
    )
    assert skipped is None

    wrong_item = await updater.apply_patch(
        doc.id, "character", 0, {"status": "generating"}, item_id="char-9",
    )
    assert wrong_item is None

    guarded = await updater.apply_patch(
        doc.id, "character", 0, {"status": "generating"}, guard=lambda: False,
    )
    assert guarded is None
    assert (await store.read(doc.id)).item_at("character", 0).status == "pending"


@pytest.mark.asyncio
async def test_patch_normalises_terminal_items(store, updater):
    doc = await store.create(_document(characters=1))
    await updater.apply_patch(doc.id, "character", 0, {"status": "generating", "job_handle": "job-1"})

    doc = await updater.apply_patch(doc.id, "character", 0, {"status": "error"})
    item = doc.item_at("character", 0)
    assert item.job_handle is None
    assert item.error == "Generation failed"

    with pytest.raises(ValidationError):
        await updater.apply_patch(doc.id, "character", 0, {"status": "done"})
    with pytest.raises(ValidationError):
        await updater.apply_patch(doc.id, "character", 0, {"status": "polling"})
    with pytest.raises(ValidationError, match="Invalid character index"):
        await updater.apply_patch(doc.id, "character", 3, {"status": "pending"})


@pytest.mark.asyncio
async def test_updater_defaults_come_from_settings(store):
    doc = await store.create(_document(characters=1))
    updater = DocumentUpdater(store)

    written = await updater.apply_patch(doc.id, "character", 0, {"prompt": "a taller girl"})
    assert written.item_at("character", 0).prompt == "a taller girl"
