"""
Tests for preview/export/download/mark-applied, including the all-or-nothing
export cascade under an injected mid-cascade database failure.
"""

import hashlib
import io
import zipfile
import pytest
from unittest.mock import patch
from sqlalchemy.exc import OperationalError

from adaudit.errors import (
    NotFoundError, InvalidTransitionError, InvalidStateError, IntegrityError,
)
from adaudit.services.change_set_service import ChangeSetService
from adaudit.services.decision_service import DecisionService
from adaudit.services.export_service import ExportService


async def _approved_change_set(db, make_decision, account_id, count: int = 1, **decision_fields):
    decisions = DecisionService(db)
    ids = []
    for _ in range(count):
        decision = await make_decision(**decision_fields)
        ids.append((await decisions.approve(decision.id)).id)
    change_sets = ChangeSetService(db)
    cs = await change_sets.create(account_id=account_id, name="Q3 bids", decision_ids=ids)
    cs = await change_sets.approve(cs.id)
    return cs, ids


@pytest.mark.anyio
async def test_scenario_a_full_export(db, make_decision, account_id):
    d1 = await make_decision()
    decisions = DecisionService(db)
    await decisions.approve(d1.id)
    change_sets = ChangeSetService(db)
    c1 = await change_sets.create(account_id=account_id, name="C1", decision_ids=[d1.id])
    await change_sets.approve(c1.id)

    exported = await ExportService(db).export(c1.id)

    assert exported.status == "exported"
    assert exported.exported_at is not None
    assert exported.export_files == [{"filename": "keywords.csv", "rows": 1}]
    assert len(exported.export_hash) == 64
    d1 = await decisions.get(d1.id)
    assert d1.status == "exported"
    assert d1.exported_at == exported.exported_at


@pytest.mark.anyio
async def test_preview_is_deterministic_and_side_effect_free(db, make_decision, account_id):
    cs, _ = await _approved_change_set(db, make_decision, account_id, count=3)
    service = ExportService(db)

    first = await service.preview(cs.id)
    second = await service.preview(cs.id)

    assert first == second
    assert first["files"][0]["filename"] == "keywords.csv"
    assert first["files"][0]["row_count"] == 3
    assert (await ChangeSetService(db).get(cs.id)).status == "approved"


@pytest.mark.anyio
async def test_export_hash_matches_preview_content(db, make_decision, account_id):
    cs, ids = await _approved_change_set(db, make_decision, account_id, count=2)
    service = ExportService(db)
    files = service.generator.generate_files(await service.change_sets.members(cs.id))

    exported = await service.export(cs.id)

    expected = hashlib.sha256(b"".join(f.content.encode("utf-8") for f in files)).hexdigest()
    assert exported.export_hash == expected


@pytest.mark.anyio
async def test_export_is_all_or_nothing(db, make_decision, account_id):
    cs, ids = await _approved_change_set(db, make_decision, account_id, count=3)
    original = ExportService._cascade_decision
    calls = []

    async def flaky_cascade(self, decision_id, change_set_id, exported_at):
        calls.append(decision_id)
        if len(calls) == 2:
            raise OperationalError("UPDATE decisions", {}, Exception("disk I/O error"))
        return await original(self, decision_id, change_set_id, exported_at)

    with patch.object(ExportService, "_cascade_decision", flaky_cascade):
        with pytest.raises(IntegrityError):
            await ExportService(db).export(cs.id)

    assert len(calls) == 2
    change_set = await ChangeSetService(db).get(cs.id)
    assert change_set.status == "approved"
    assert change_set.export_hash is None
    assert change_set.export_files is None
    decisions = DecisionService(db)
    for decision_id in ids:
        decision = await decisions.get(decision_id)
        assert decision.status == "approved"
        assert decision.exported_at is None

    # Nothing was stored, so the export can be retried cleanly
    retried = await ExportService(db).export(cs.id)
    assert retried.status == "exported"


@pytest.mark.anyio
async def test_export_requires_approved_change_set(db, make_decision, account_id):
    d1 = await make_decision()
    await DecisionService(db).approve(d1.id)
    cs = await ChangeSetService(db).create(account_id=account_id, name="C1", decision_ids=[d1.id])

    with pytest.raises(InvalidTransitionError):
        await ExportService(db).export(cs.id)


@pytest.mark.anyio
async def test_export_requires_every_member_approved(db, make_decision, account_id):
    approved = await DecisionService(db).approve((await make_decision()).id)
    draft = await make_decision()
    change_sets = ChangeSetService(db)
    cs = await change_sets.create(account_id=account_id, name="C1", decision_ids=[approved.id, draft.id])
    await change_sets.approve(cs.id)

    with pytest.raises(InvalidStateError) as exc_info:
        await ExportService(db).export(cs.id)
    assert exc_info.value.decision_id == str(draft.id)


@pytest.mark.anyio
async def test_export_of_set_emptied_by_rollback_is_invalid_state(db, make_decision, account_id):
    cs, ids = await _approved_change_set(db, make_decision, account_id)
    await DecisionService(db).rollback(ids[0])

    with pytest.raises(InvalidStateError):
        await ExportService(db).export(cs.id)


@pytest.mark.anyio
async def test_download_returns_recorded_artifact(db, make_decision, account_id):
    cs, _ = await _approved_change_set(db, make_decision, account_id, count=2)
    service = ExportService(db)
    exported = await service.export(cs.id, account_name="Acme Shoes")

    artifact = await service.download(cs.id)

    assert artifact.filename.startswith("export_Q3_bids_")
    assert artifact.filename.endswith(".zip")
    assert artifact.content_hash == exported.export_hash
    with zipfile.ZipFile(io.BytesIO(artifact.content)) as archive:
        assert archive.namelist() == ["README.md", "keywords.csv"]
        readme = archive.read("README.md").decode("utf-8")
        assert "**Account:** Acme Shoes" in readme
        assert "**keywords.csv** - 2 rows" in readme
        csv_bytes = archive.read("keywords.csv")
    assert hashlib.sha256(csv_bytes).hexdigest() == exported.export_hash


@pytest.mark.anyio
async def test_download_before_export_is_invalid_state(db, make_decision, account_id):
    cs, _ = await _approved_change_set(db, make_decision, account_id)
    with pytest.raises(InvalidStateError):
        await ExportService(db).download(cs.id)


@pytest.mark.anyio
async def test_mark_applied_cascades_to_members(db, make_decision, account_id):
    cs, ids = await _approved_change_set(db, make_decision, account_id, count=2)
    service = ExportService(db)
    await service.export(cs.id)

    applied = await service.mark_applied(cs.id)

    assert applied.status == "applied"
    assert applied.applied_at is not None
    for decision_id in ids:
        decision = await DecisionService(db).get(decision_id)
        assert decision.status == "applied"
        assert decision.applied_at == applied.applied_at

    with pytest.raises(InvalidTransitionError):
        await service.mark_applied(cs.id)
    # Applied bundles stay downloadable
    assert (await service.download(cs.id)).content_hash == applied.export_hash


@pytest.mark.anyio
async def test_mark_applied_skips_members_rolled_back_after_export(db, make_decision, account_id):
    cs, ids = await _approved_change_set(db, make_decision, account_id, count=2)
    service = ExportService(db)
    await service.export(cs.id)
    await DecisionService(db).rollback(ids[0])

    await service.mark_applied(cs.id)

    decisions = DecisionService(db)
    assert (await decisions.get(ids[0])).status == "rolled_back"
    assert (await decisions.get(ids[1])).status == "applied"


@pytest.mark.anyio
async def test_mark_applied_requires_exported(db, make_decision, account_id):
    cs, _ = await _approved_change_set(db, make_decision, account_id)
    with pytest.raises(InvalidTransitionError):
        await ExportService(db).mark_applied(cs.id)


@pytest.mark.anyio
async def test_applied_change_set_cannot_be_deleted(db, make_decision, account_id):
    cs, _ = await _approved_change_set(db, make_decision, account_id)
    service = ExportService(db)
    await service.export(cs.id)
    await service.mark_applied(cs.id)

    with pytest.raises(InvalidStateError):
        await ChangeSetService(db).delete(cs.id)


@pytest.mark.anyio
async def test_deleting_exported_change_set_drops_artifact_keeps_decisions(db, make_decision, account_id):
    cs, ids = await _approved_change_set(db, make_decision, account_id)
    service = ExportService(db)
    await service.export(cs.id)

    await ChangeSetService(db).delete(cs.id)

    decision = await DecisionService(db).get(ids[0])
    assert decision.status == "exported"
    assert decision.change_set_id is None
    with pytest.raises(NotFoundError):
        await service.download(cs.id)
