"""Document store over the workflows table.

The only place where a WorkflowDocument's id-keyed item collections are
converted to and from ordered JSON arrays. Writes are conditional on the
document's ``version`` column; a mismatch is reported to the caller, which
decides whether to re-read and retry (see reelflow.orchestrator.updater).
"""

import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelflow.db.engine import async_session
from reelflow.db.models import Workflow
from reelflow.errors import NotFoundError
from reelflow.schemas.workflow import ITEM_KINDS, WorkflowDocument, index_items

logger = logging.getLogger(__name__)


def _row_values(doc: WorkflowDocument) -> dict:
    values = {
        "kind": doc.kind,
        "title": doc.title,
        "stage": doc.stage,
        "status": doc.status,
        "config": doc.config.model_dump(mode="json"),
        "source_video_url": doc.source_video_url,
        "script_result": doc.script_result,
        "merged_video_url": doc.merged_video_url,
        "error_message": doc.error_message,
    }
    for attr, _ in ITEM_KINDS.values():
        values[attr] = [item.model_dump(mode="json") for item in getattr(doc, attr).values()]
    return values


def _to_document(row: Workflow) -> WorkflowDocument:
    collections = {
        attr: index_items([model.model_validate(raw) for raw in (getattr(row, attr) or [])])
        for attr, model in ITEM_KINDS.values()
    }
    return WorkflowDocument(
        id=row.id,
        kind=row.kind,
        title=row.title or "",
        stage=row.stage,
        status=row.status,
        config=row.config or {},
        source_video_url=row.source_video_url,
        script_result=row.script_result,
        merged_video_url=row.merged_video_url,
        error_message=row.error_message,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        **collections,
    )


class DocumentStore:
    """Async CRUD plus compare-and-set writes for workflow documents."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or async_session

    async def create(self, doc: WorkflowDocument) -> WorkflowDocument:
        row = Workflow(id=doc.id, version=0, **_row_values(doc))
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        logger.info(f"Workflow {doc.id}: created ({doc.kind})")
        return _to_document(row)

    async def read(self, doc_id: uuid.UUID) -> WorkflowDocument:
        async with self._session_factory() as session:
            row = await session.get(Workflow, doc_id)
        if row is None:
            raise NotFoundError(f"Workflow {doc_id} not found")
        return _to_document(row)

    async def write_if_version(
        self, doc: WorkflowDocument, expected_version: int
    ) -> Optional[WorkflowDocument]:
        """Write doc only if the stored version still equals expected_version.

        Returns the written document (with its new version) or None when
        another writer got there first.
        """
        new_version = expected_version + 1
        stmt = (
            update(Workflow)
            .where(Workflow.id == doc.id, Workflow.version == expected_version)
            .values(version=new_version, **_row_values(doc))
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 0:
            logger.debug(f"Workflow {doc.id}: version {expected_version} is stale")
            return None
        return doc.model_copy(update={"version": new_version})

    async def delete(self, doc_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(Workflow).where(Workflow.id == doc_id))
            await session.commit()
        if result.rowcount == 0:
            raise NotFoundError(f"Workflow {doc_id} not found")
        logger.info(f"Workflow {doc_id}: deleted")

    async def list(
        self,
        kind: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowDocument]:
        """List documents, newest first."""
        stmt = select(Workflow).order_by(Workflow.created_at.desc())
        if kind is not None:
            stmt = stmt.where(Workflow.kind == kind)
        if statuses is not None:
            stmt = stmt.where(Workflow.status.in_(list(statuses)))
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_document(row) for row in rows]
