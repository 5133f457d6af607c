"""
Export Service — Turns an approved change set into a Google Ads Editor bundle.

preview() re-renders the CSVs without touching the database. export() renders
them once more, records the hash/manifest/artifact, and moves the change set
and every member decision to exported inside a single SAVEPOINT: either all
rows move or none do. mark_applied() is the operator's confirmation that the
bundle was posted and cascades the same way.
"""

import hashlib
import logging
import uuid
from typing import Optional
from datetime import datetime
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from adaudit.config import get_settings
from adaudit.errors import (
    NotFoundError, InvalidTransitionError, InvalidStateError, IntegrityError,
)
from adaudit.models import (
    ChangeSet, ChangeSetStatus, Decision, DecisionStatus, ExportArtifact,
)
from adaudit.services.activity import log_activity
from adaudit.services.change_set_service import ChangeSetService
from adaudit.services.csv_generator import CsvGenerator, content_bytes
from adaudit.utils import safe_filename, utcnow

logger = logging.getLogger(__name__)

DOWNLOADABLE_STATUSES = (ChangeSetStatus.EXPORTED.value, ChangeSetStatus.APPLIED.value)


class ExportService:
    def __init__(self, db: AsyncSession, actor: Optional[str] = None):
        self.db = db
        self.actor = actor
        self.change_sets = ChangeSetService(db, actor=actor)
        self.generator = CsvGenerator()

    async def preview(self, change_set_id) -> dict:
        """Side-effect free rendering of what export() would produce right now."""
        change_set = await self.change_sets.get(change_set_id)
        files = self.generator.generate_files(await self.change_sets.members(change_set.id))
        return {
            "change_set_id": str(change_set.id),
            "files": [
                {"filename": f.filename, "row_count": f.rows, "preview_text": f.preview_text}
                for f in files
            ],
        }

    async def export(self, change_set_id, account_name: Optional[str] = None) -> ChangeSet:
        change_set = await self.change_sets.get(change_set_id, for_update=True)
        if change_set.status != ChangeSetStatus.APPROVED.value:
            raise InvalidTransitionError(
                f"Only approved change sets can be exported (change set is {change_set.status})"
            )

        members = await self.change_sets.members(change_set.id)
        if not members:
            raise InvalidStateError("Cannot export an empty change set")
        for decision in members:
            if decision.status != DecisionStatus.APPROVED.value:
                raise InvalidStateError(
                    f"Decision {decision.id} is {decision.status}; every decision must be approved before export",
                    decision_id=str(decision.id),
                )

        files = self.generator.generate_files(members)
        export_hash = hashlib.sha256(content_bytes(files)).hexdigest()
        manifest = [{"filename": f.filename, "rows": f.rows} for f in files]
        exported_at = utcnow()
        archive = self.generator.build_archive(
            files,
            change_set_name=change_set.name,
            account_name=account_name or get_settings().export_account_label,
            generated_at=exported_at,
        )
        filename = f"export_{safe_filename(change_set.name)}_{exported_at:%Y%m%d_%H%M%S}.zip"

        cs_id, cs_name = change_set.id, change_set.name
        member_ids = [d.id for d in members]

        try:
            async with self.db.begin_nested():
                moved = await self.db.execute(
                    update(ChangeSet)
                    .where(ChangeSet.id == cs_id, ChangeSet.status == ChangeSetStatus.APPROVED.value)
                    .values(
                        status=ChangeSetStatus.EXPORTED.value,
                        export_files=manifest,
                        export_hash=export_hash,
                        exported_at=exported_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    raise IntegrityError(f"Change set {cs_id} changed while being exported")

                for decision_id in member_ids:
                    await self._cascade_decision(decision_id, cs_id, exported_at)

                self.db.add(ExportArtifact(
                    id=uuid.uuid4(),
                    change_set_id=cs_id,
                    filename=filename,
                    content=archive,
                    content_hash=export_hash,
                    manifest=manifest,
                ))
                await self.db.flush()
        except IntegrityError:
            logger.error(f"Export of change set {cs_id} aborted; no rows were changed", exc_info=True)
            raise
        except SQLAlchemyError as e:
            logger.error(f"Export of change set {cs_id} failed mid-cascade; rolled back", exc_info=True)
            raise IntegrityError(f"Export of change set {cs_id} could not complete and was rolled back") from e

        log_activity(
            self.db,
            actor=self.actor,
            action="change_set_exported",
            category="export",
            description=f"Exported '{cs_name}': {len(member_ids)} decisions in {len(files)} files",
            entity_type="change_set",
            entity_id=str(cs_id),
            details={"files": manifest, "export_hash": export_hash},
        )
        logger.info(f"Change set {cs_id} exported ({len(member_ids)} decisions, hash {export_hash[:12]})")
        return await self.change_sets.get(cs_id)

    async def _cascade_decision(self, decision_id: uuid.UUID, change_set_id: uuid.UUID, exported_at: datetime) -> None:
        result = await self.db.execute(
            update(Decision)
            .where(
                Decision.id == decision_id,
                Decision.is_current.is_(True),
                Decision.change_set_id == change_set_id,
                Decision.status == DecisionStatus.APPROVED.value,
            )
            .values(status=DecisionStatus.EXPORTED.value, exported_at=exported_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise IntegrityError(
                f"Decision {decision_id} changed while its change set was being exported",
                decision_id=str(decision_id),
            )

    async def download(self, change_set_id) -> ExportArtifact:
        """The artifact recorded at export time; never regenerated."""
        change_set = await self.change_sets.get(change_set_id)
        if change_set.status not in DOWNLOADABLE_STATUSES:
            raise InvalidStateError(
                f"Change set {change_set.id} has not been exported (status is {change_set.status})"
            )
        artifact = (await self.db.execute(
            select(ExportArtifact).where(ExportArtifact.change_set_id == change_set.id)
        )).scalar_one_or_none()
        if not artifact:
            raise NotFoundError(f"No export artifact stored for change set {change_set.id}")
        return artifact

    async def mark_applied(self, change_set_id) -> ChangeSet:
        """exported -> applied for the change set and all of its exported members."""
        change_set = await self.change_sets.get(change_set_id, for_update=True)
        if change_set.status != ChangeSetStatus.EXPORTED.value:
            raise InvalidTransitionError(
                f"Only exported change sets can be marked applied (change set is {change_set.status})"
            )

        cs_id, cs_name = change_set.id, change_set.name
        applied_at = utcnow()
        try:
            async with self.db.begin_nested():
                moved = await self.db.execute(
                    update(ChangeSet)
                    .where(ChangeSet.id == cs_id, ChangeSet.status == ChangeSetStatus.EXPORTED.value)
                    .values(status=ChangeSetStatus.APPLIED.value, applied_at=applied_at)
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    raise IntegrityError(f"Change set {cs_id} changed while being marked applied")
                applied = await self.db.execute(
                    update(Decision)
                    .where(
                        Decision.change_set_id == cs_id,
                        Decision.is_current.is_(True),
                        Decision.status == DecisionStatus.EXPORTED.value,
                    )
                    .values(status=DecisionStatus.APPLIED.value, applied_at=applied_at)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.error(f"Marking change set {cs_id} applied failed; rolled back", exc_info=True)
            raise IntegrityError(f"Change set {cs_id} could not be marked applied") from e

        log_activity(
            self.db,
            actor=self.actor,
            action="change_set_applied",
            category="export",
            description=f"Marked '{cs_name}' applied ({applied.rowcount} decisions)",
            entity_type="change_set",
            entity_id=str(cs_id),
        )
        logger.info(f"Change set {cs_id} marked applied")
        return await self.change_sets.get(cs_id)
