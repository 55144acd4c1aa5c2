"""
Subscription API Tests
======================

Client endpoints: receipt validation, status, sync and history.
"""

from datetime import timedelta

import pytest

from app.core.security import create_access_token

BASE_URL = "/api/v1/subscription"


def receipt_body(**overrides) -> dict:
    body = {
        "receipt": "receipt-abc",
        "productId": "monthly_subscription",
        "platform": "storeA",
    }
    body.update(overrides)
    return body


class TestAuthentication:
    """Client endpoints require a bearer token."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,path", [
        ("GET", "/status"),
        ("POST", "/sync"),
        ("GET", "/events"),
    ])
    async def test_missing_token(self, client, method, path):
        response = await client.request(method, BASE_URL + path)

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "AUTH_002"
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        response = await client.get(
            f"{BASE_URL}/status", headers={"Authorization": "Bearer not-a-token"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_005"

    @pytest.mark.asyncio
    async def test_expired_token(self, client):
        token = create_access_token({"sub": "user-1"}, expires_delta=timedelta(minutes=-5))
        response = await client.get(
            f"{BASE_URL}/status", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401


class TestValidate:
    """POST /validate"""

    @pytest.mark.asyncio
    async def test_monthly_receipt(self, client, auth_headers):
        response = await client.post(
            f"{BASE_URL}/validate", json=receipt_body(), headers=auth_headers()
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["isActive"] is True
        assert data["plan"] == "monthly"
        assert data["isLifetime"] is False
        assert data["expiryDate"] is not None
        assert data["status"] == "active"

    @pytest.mark.asyncio
    async def test_lifetime_receipt(self, client, auth_headers):
        response = await client.post(
            f"{BASE_URL}/validate",
            json=receipt_body(productId="lifetime_subscription"),
            headers=auth_headers(),
        )

        data = response.json()["data"]
        assert data["isActive"] is True
        assert data["isLifetime"] is True
        assert data["expiryDate"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("alias", ["ios", "android", "iOS"])
    async def test_mobile_platform_aliases(self, client, auth_headers, alias):
        response = await client.post(
            f"{BASE_URL}/validate", json=receipt_body(platform=alias), headers=auth_headers()
        )

        assert response.status_code == 200
        assert response.json()["data"]["isActive"] is True

    @pytest.mark.asyncio
    async def test_unknown_product(self, client, auth_headers):
        response = await client.post(
            f"{BASE_URL}/validate",
            json=receipt_body(productId="gems_pack"),
            headers=auth_headers(),
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "SUB_001"
        assert error["field"] == "productId"

    @pytest.mark.asyncio
    async def test_unknown_platform(self, client, auth_headers):
        response = await client.post(
            f"{BASE_URL}/validate",
            json=receipt_body(platform="windows"),
            headers=auth_headers(),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_missing_receipt(self, client, auth_headers):
        body = receipt_body()
        del body["receipt"]
        response = await client.post(f"{BASE_URL}/validate", json=body, headers=auth_headers())

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_blank_receipt(self, client, auth_headers):
        response = await client.post(
            f"{BASE_URL}/validate", json=receipt_body(receipt="   "), headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "SUB_002"

    @pytest.mark.asyncio
    async def test_receipt_belongs_to_caller(self, client, auth_headers):
        await client.post(
            f"{BASE_URL}/validate", json=receipt_body(), headers=auth_headers("user-1")
        )

        response = await client.get(f"{BASE_URL}/status", headers=auth_headers("user-2"))
        assert response.json()["data"]["isActive"] is False


class TestStatus:
    """GET /status and POST /sync"""

    @pytest.mark.asyncio
    async def test_no_subscription(self, client, auth_headers):
        response = await client.get(f"{BASE_URL}/status", headers=auth_headers())

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["isActive"] is False
        assert data["plan"] is None
        assert data["isLifetime"] is False
        assert data["isTrialActive"] is False
        assert data["status"] == "none"

    @pytest.mark.asyncio
    async def test_status_after_validation(self, client, auth_headers):
        await client.post(
            f"{BASE_URL}/validate",
            json=receipt_body(productId="yearly_subscription"),
            headers=auth_headers(),
        )

        response = await client.get(f"{BASE_URL}/status", headers=auth_headers())
        data = response.json()["data"]
        assert data["isActive"] is True
        assert data["plan"] == "yearly"

    @pytest.mark.asyncio
    async def test_sync(self, client, auth_headers):
        await client.post(f"{BASE_URL}/validate", json=receipt_body(), headers=auth_headers())

        response = await client.post(f"{BASE_URL}/sync", headers=auth_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["isActive"] is True


class TestEvents:
    """GET /events"""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, client, auth_headers):
        await client.post(f"{BASE_URL}/validate", json=receipt_body(), headers=auth_headers())
        await client.post(f"{BASE_URL}/validate", json=receipt_body(), headers=auth_headers())

        response = await client.get(f"{BASE_URL}/events", headers=auth_headers())

        assert response.status_code == 200
        events = response.json()["data"]
        assert len(events) == 2
        assert events[0]["outcome"] == "rejected"
        assert events[0]["reason"] == "replay_noop"
        assert events[1]["outcome"] == "applied"
        assert events[1]["eventKind"] == "purchased"
        assert events[1]["provider"] == "storeA"
        assert events[1]["productId"] == "monthly_subscription"

    @pytest.mark.asyncio
    async def test_filter_by_kind(self, client, auth_headers):
        await client.post(f"{BASE_URL}/validate", json=receipt_body(), headers=auth_headers())

        response = await client.get(
            f"{BASE_URL}/events", params={"event_kind": "refunded"}, headers=auth_headers()
        )

        assert response.status_code == 200
        assert response.json()["data"] == []

    @pytest.mark.asyncio
    async def test_other_users_events_are_hidden(self, client, auth_headers):
        await client.post(f"{BASE_URL}/validate", json=receipt_body(), headers=auth_headers("user-1"))

        response = await client.get(f"{BASE_URL}/events", headers=auth_headers("user-2"))
        assert response.json()["data"] == []
