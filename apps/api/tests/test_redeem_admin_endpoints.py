from datetime import timedelta

import pytest

from redeem_api.core.clock import utcnow
from redeem_api.core.settings import settings
from redeem_api.models.redeem import RedeemRecordStatus, RedeemRewardType
from redeem_api.services.redeem import RedeemStore

ADDRESS = "0x" + "e" * 64


@pytest.mark.asyncio
async def test_admin_routes_require_key(client, admin_key) -> None:
    missing = await client.get("/api/v1/admin/redeem/codes")
    assert missing.status_code == 401

    wrong = await client.get("/api/v1/admin/redeem/codes", headers={"X-API-Key": "nope"})
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_admin_routes_closed_in_production_without_key(client) -> None:
    previous_key, previous_env = settings.admin_api_key, settings.environment
    settings.admin_api_key = ""
    settings.environment = "production"
    try:
        response = await client.get("/api/v1/admin/redeem/codes")
    finally:
        settings.admin_api_key, settings.environment = previous_key, previous_env
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_create_batch_normalizes_and_dedupes_codes(client, admin_key) -> None:
    response = await client.post(
        "/api/v1/admin/redeem/batches",
        headers=admin_key,
        json={
            "title": "Spring drop",
            "rewardType": "mantou",
            "rewardPayload": {"amount": 20},
            "batchMaxRedeem": 10,
            "codes": ["spring-001", "SPRING001", "spr ing 002", "abc"],
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["count"] == 2
    assert sorted(code["code"] for code in body["codes"]) == ["SPRING001", "SPRING002"]
    assert body["batch"]["totalCodes"] == 2
    assert body["batch"]["maxRedeem"] == 10

    duplicate = await client.post(
        "/api/v1/admin/redeem/batches",
        headers=admin_key,
        json={"title": "Again", "rewardType": "mantou", "rewardPayload": {"amount": 20}, "codes": ["SPRING-002"]},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == {"error": "duplicate_codes", "duplicated": ["SPRING002"]}

    listing = await client.get("/api/v1/admin/redeem/codes", headers=admin_key, params={"q": "spring drop"})
    assert listing.json()["total"] == 2


@pytest.mark.asyncio
async def test_create_rejects_invalid_reward_and_short_codes(client, admin_key) -> None:
    bad_reward = await client.post(
        "/api/v1/admin/redeem/batches",
        headers=admin_key,
        json={"title": "Broken", "rewardType": "vip", "rewardPayload": {}, "codes": ["VIPCODE1"]},
    )
    assert bad_reward.status_code == 400
    assert bad_reward.json()["detail"] == "reward_days_required"

    too_short = await client.post(
        "/api/v1/admin/redeem/codes",
        headers=admin_key,
        json={"rewardType": "custom", "codes": ["ab", "--"]},
    )
    assert too_short.status_code == 400
    assert too_short.json()["detail"] == "codes_required"


@pytest.mark.asyncio
async def test_standalone_codes_update_and_filter(client, admin_key) -> None:
    created = await client.post(
        "/api/v1/admin/redeem/codes",
        headers=admin_key,
        json={"rewardType": "custom", "rewardPayload": {"message": "Hi"}, "note": "vip gift", "codes": ["GIFT0001"]},
    )
    assert created.status_code == 201
    (code,) = created.json()
    assert code["batchId"] is None
    assert code["rewardType"] == "custom"

    expires_at = (utcnow() + timedelta(days=3)).isoformat()
    patched = await client.patch(
        f"/api/v1/admin/redeem/codes/{code['id']}",
        headers=admin_key,
        json={"status": "disabled", "expiresAt": expires_at, "note": None},
    )
    assert patched.status_code == 200
    assert patched.json()["status"] == "disabled"
    assert patched.json()["note"] is None
    assert patched.json()["expiresAt"] is not None

    disabled = await client.get("/api/v1/admin/redeem/codes", headers=admin_key, params={"status": "disabled"})
    assert [item["code"] for item in disabled.json()["items"]] == ["GIFT0001"]

    redeem = await client.post("/api/v1/redeem", json={"code": "GIFT0001", "address": ADDRESS})
    assert redeem.status_code == 403
    assert redeem.json()["error"] == "code_disabled"

    missing = await client.patch(
        "/api/v1/admin/redeem/codes/00000000-0000-0000-0000-000000000000",
        headers=admin_key,
        json={"status": "active"},
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_batch_status_and_record_listing(client, admin_key) -> None:
    created = await client.post(
        "/api/v1/admin/redeem/batches",
        headers=admin_key,
        json={"title": "Records", "rewardType": "custom", "codes": ["RECORD01", "RECORD02"]},
    )
    batch_id = created.json()["batch"]["id"]

    for code in ("RECORD01", "RECORD02"):
        response = await client.post("/api/v1/redeem", json={"code": code, "address": ADDRESS})
        assert response.status_code == 200

    records = await client.get(
        "/api/v1/admin/redeem/records",
        headers=admin_key,
        params={"batchId": batch_id, "status": "success", "pageSize": 5},
    )
    assert records.status_code == 200
    page = records.json()
    assert page["total"] == 2
    assert page["pageSize"] == 5
    assert {item["code"] for item in page["items"]} == {"RECORD01", "RECORD02"}
    assert all(item["batchTitle"] == "Records" for item in page["items"])

    by_address = await client.get("/api/v1/admin/redeem/records", headers=admin_key, params={"q": "record02"})
    assert by_address.json()["total"] == 1

    disabled = await client.patch(
        f"/api/v1/admin/redeem/batches/{batch_id}", headers=admin_key, json={"status": "disabled"}
    )
    assert disabled.json()["status"] == "disabled"


@pytest.mark.asyncio
async def test_reconcile_endpoint_settles_pending(app_with_db, client, admin_key) -> None:
    _, session_factory = app_with_db
    async with session_factory() as session:
        store = RedeemStore(session)
        batch = await store.create_batch(
            title="Stuck", reward_type=RedeemRewardType.CUSTOM, reward_payload={"message": "late"}
        )
        (code,) = await store.create_codes(["STUCK001"], batch=batch)
        await store.reserve_code(code.id)
        record = await store.create_record(
            code=code,
            address=ADDRESS,
            reward_type=RedeemRewardType.CUSTOM,
            reward_payload={"message": "late"},
        )
        record_id = record.id
        await session.commit()

    response = await client.post(
        "/api/v1/admin/redeem/reconcile",
        headers=admin_key,
        json={"pendingTimeoutSeconds": 0},
    )
    assert response.status_code == 200
    assert response.json() == {"checked": 1, "succeeded": 1, "failed": 0}

    async with session_factory() as session:
        settled = await RedeemStore(session).get_record(record_id)
    assert settled.status == RedeemRecordStatus.SUCCESS
