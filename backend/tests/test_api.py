"""
End-to-end tests through the HTTP API (decisions + change sets + export).
"""

import hashlib
import uuid
import pytest


async def _create_decision(client, account_id, **overrides) -> dict:
    body = {
        "account_id": str(account_id),
        "module_id": 4,
        "entity_type": "keyword",
        "entity_id": f"kw-{uuid.uuid4().hex[:8]}",
        "entity_name": "running shoes",
        "action_type": "update_bid",
        "after_value": {"cpc_bid_micros": 1_500_000},
        "evidence": {"campaign_name": "Brand", "ad_group_name": "Shoes"},
    }
    body.update(overrides)
    response = await client.post("/api/decisions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.anyio
async def test_decision_lifecycle_over_http(client, account_id):
    d1 = await _create_decision(client, account_id)
    assert d1["status"] == "draft"
    assert d1["created_by"] == "dev-no-auth"

    response = await client.patch(f"/api/decisions/{d1['id']}", json={"after_value": {"bid": 2}})
    assert response.status_code == 200
    d1b = response.json()
    assert d1b["version"] == 2
    assert d1b["after_value"] == {"cpc_bid_micros": 1_500_000, "bid": 2}

    history = (await client.get(f"/api/decisions/group/{d1['decision_group_id']}/history")).json()
    assert [(v["version"], v["is_current"]) for v in history] == [(1, False), (2, True)]
    assert history[0]["superseded_by"] == d1b["id"]

    response = await client.post(f"/api/decisions/{d1b['id']}/approve")
    assert response.json()["status"] == "approved"

    response = await client.post(f"/api/decisions/{d1b['id']}/approve")
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidTransition"

    response = await client.post(f"/api/decisions/{d1['id']}/rollback")
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidState"


@pytest.mark.anyio
async def test_list_and_summary(client, account_id):
    d1 = await _create_decision(client, account_id)
    await client.patch(f"/api/decisions/{d1['id']}", json={"rationale": "v2"})
    await _create_decision(client, account_id, entity_type="campaign", action_type="pause", module_id=9)

    listing = (await client.get(f"/api/decisions/account/{account_id}")).json()
    assert listing["meta"]["total"] == 2

    everything = (await client.get(f"/api/decisions/account/{account_id}", params={"current_only": "false"})).json()
    assert everything["meta"]["total"] == 3

    summary = (await client.get(f"/api/decisions/account/{account_id}/summary")).json()
    assert summary["total"] == 2
    assert summary["by_status"] == {"draft": 2}


@pytest.mark.anyio
async def test_error_mapping(client, account_id):
    response = await client.get(f"/api/decisions/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"

    response = await client.get("/api/decisions/account/not-a-uuid")
    assert response.status_code == 400
    assert response.json()["error"] == "Validation"

    response = await client.post("/api/decisions", json={
        "account_id": str(account_id),
        "module_id": 4,
        "entity_type": "billboard",
        "entity_id": "x",
        "action_type": "pause",
    })
    assert response.status_code == 400

    response = await client.post("/api/decisions", json={
        "account_id": str(account_id),
        "module_id": 4,
        "entity_type": "keyword",
        "entity_id": "k" * 101,
        "action_type": "pause",
    })
    assert response.status_code == 400
    assert response.json()["error"] == "Validation"

    response = await client.post("/api/decisions", json={"account_id": str(account_id), "module_id": 40})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_bulk_approve_and_reject(client, account_id):
    d1 = await _create_decision(client, account_id)
    d2 = await _create_decision(client, account_id)

    response = await client.post("/api/decisions/bulk-approve", json={"ids": [d1["id"], "missing-id"]})
    assert response.status_code == 200
    body = response.json()
    assert body["succeeded"] == 1
    assert body["failed"] == 1
    assert body["results"][0]["status"] == "approved"
    assert body["results"][1]["id"] == "missing-id"
    assert body["results"][1]["error"] == "NotFound"

    response = await client.post(
        "/api/decisions/bulk-reject", json={"ids": [d1["id"], d2["id"]], "reason": "Budget freeze"},
    )
    results = response.json()["results"]
    assert [r["status"] for r in results] == ["rolled_back", "rolled_back"]
    assert results[1]["rationale"] == "Rejected: Budget freeze"


@pytest.mark.anyio
async def test_change_set_export_download_and_apply(client, account_id):
    d1 = await _create_decision(client, account_id)
    d2 = await _create_decision(client, account_id, entity_type="campaign", action_type="pause", entity_name="Brand")
    for d in (d1, d2):
        await client.post(f"/api/decisions/{d['id']}/approve")

    pool = (await client.get(f"/api/export/account/{account_id}/exportable-decisions")).json()
    assert {d["id"] for d in pool} == {d1["id"], d2["id"]}

    response = await client.post("/api/export/change-sets", json={
        "account_id": str(account_id),
        "name": "Week 42",
        "decision_ids": [d1["id"], d2["id"]],
    })
    assert response.status_code == 201
    cs = response.json()
    assert cs["decisions_count"] == 2
    cs_id = cs["id"]

    preview = (await client.get(f"/api/export/change-sets/{cs_id}/preview")).json()
    assert [f["filename"] for f in preview["files"]] == ["campaigns.csv", "keywords.csv"]

    response = await client.post(f"/api/export/change-sets/{cs_id}/export")
    assert response.status_code == 409

    assert (await client.post(f"/api/export/change-sets/{cs_id}/approve")).json()["status"] == "approved"
    exported = (await client.post(
        f"/api/export/change-sets/{cs_id}/export", json={"account_name": "Acme"},
    )).json()
    assert exported["status"] == "exported"
    assert exported["export_files"] == [
        {"filename": "campaigns.csv", "rows": 1},
        {"filename": "keywords.csv", "rows": 1},
    ]

    download = await client.get(f"/api/export/change-sets/{cs_id}/download")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    assert download.headers["x-export-hash"] == exported["export_hash"]
    assert download.headers["content-disposition"].startswith('attachment; filename="export_Week_42_')

    members = (await client.get(f"/api/export/change-sets/{cs_id}")).json()["decisions"]
    assert {m["status"] for m in members} == {"exported"}

    applied = (await client.post(f"/api/export/change-sets/{cs_id}/mark-applied")).json()
    assert applied["status"] == "applied"

    response = await client.delete(f"/api/export/change-sets/{cs_id}")
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidState"

    response = await client.delete(f"/api/decisions/{d1['id']}")
    assert response.status_code == 409


@pytest.mark.anyio
async def test_conflicting_membership_over_http(client, account_id):
    d1 = await _create_decision(client, account_id)
    c1 = (await client.post("/api/export/change-sets", json={
        "account_id": str(account_id), "name": "C1", "decision_ids": [d1["id"]],
    })).json()
    c2 = (await client.post("/api/export/change-sets", json={
        "account_id": str(account_id), "name": "C2",
    })).json()

    response = await client.post(
        f"/api/export/change-sets/{c2['id']}/add-decisions", json={"decision_ids": [d1["id"]]},
    )
    assert response.status_code == 409
    assert response.json() == {
        "detail": response.json()["detail"],
        "error": "Conflict",
        "decision_id": d1["id"],
    }

    c2_after = (await client.get(f"/api/export/change-sets/{c2['id']}")).json()
    assert c2_after["decisions"] == []

    response = await client.post(
        f"/api/export/change-sets/{c1['id']}/remove-decision", json={"decision_id": d1["id"]},
    )
    assert response.json()["decisions_count"] == 0

    response = await client.post(
        f"/api/export/change-sets/{c2['id']}/add-decisions", json={"decision_ids": [d1["id"]]},
    )
    assert response.status_code == 200
    assert response.json()["decisions_count"] == 1


@pytest.mark.anyio
async def test_change_set_listing_and_delete(client, account_id):
    d1 = await _create_decision(client, account_id)
    cs = (await client.post("/api/export/change-sets", json={
        "account_id": str(account_id), "name": "C1", "decision_ids": [d1["id"]],
    })).json()

    renamed = (await client.patch(f"/api/export/change-sets/{cs['id']}", json={"name": "Renamed"})).json()
    assert renamed["name"] == "Renamed"

    listing = (await client.get(f"/api/export/account/{account_id}/change-sets")).json()
    assert [(c["name"], c["decisions_count"]) for c in listing["data"]] == [("Renamed", 1)]

    response = await client.delete(f"/api/export/change-sets/{cs['id']}")
    assert response.json() == {"deleted": True, "id": cs["id"]}

    decision = (await client.get(f"/api/decisions/{d1['id']}")).json()
    assert decision["change_set_id"] is None
    assert (await client.get(f"/api/export/change-sets/{cs['id']}")).status_code == 404


@pytest.mark.anyio
async def test_download_bytes_match_recorded_hash(client, account_id):
    d1 = await _create_decision(client, account_id)
    await client.post(f"/api/decisions/{d1['id']}/approve")
    cs = (await client.post("/api/export/change-sets", json={
        "account_id": str(account_id), "name": "C1", "decision_ids": [d1["id"]],
    })).json()
    await client.post(f"/api/export/change-sets/{cs['id']}/approve")
    exported = (await client.post(f"/api/export/change-sets/{cs['id']}/export")).json()

    first = await client.get(f"/api/export/change-sets/{cs['id']}/download")
    second = await client.get(f"/api/export/change-sets/{cs['id']}/download")
    assert first.content == second.content
    assert len(exported["export_hash"]) == len(hashlib.sha256().hexdigest())
