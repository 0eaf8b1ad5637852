"""Tests for Settings API (formhook/api/settings.py).

Tests settings management endpoints:
- GET /api/v1/settings - List settings
- GET /api/v1/settings/{key} - Get single setting
- PUT /api/v1/settings/{key} - Update setting with range checks
"""

from fastapi import status

from formhook.services.settings_service import SettingsService


class TestListSettingsEndpoint:
    """Test suite for GET /api/v1/settings."""

    async def test_lists_seeded_defaults(self, client, db):
        await SettingsService.init_defaults(db)

        response = await client.get("/api/v1/settings")

        assert response.status_code == status.HTTP_200_OK
        keys = {s["key"] for s in response.json()}
        assert keys == set(SettingsService.DEFAULTS)

    async def test_filter_by_category(self, client, db):
        await SettingsService.init_defaults(db)

        response = await client.get("/api/v1/settings", params={"category": "retries"})

        assert {s["key"] for s in response.json()} == {
            "webhook_retry_client_errors",
            "webhook_retry_sweep_interval",
        }


class TestGetSettingEndpoint:
    """Test suite for GET /api/v1/settings/{key}."""

    async def test_get_setting(self, client, db):
        await SettingsService.init_defaults(db)

        response = await client.get("/api/v1/settings/webhook_request_timeout")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["value"] == "15"
        assert response.json()["category"] == "delivery"

    async def test_unknown_key_is_404(self, client):
        response = await client.get("/api/v1/settings/no_such_setting")
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestUpdateSettingEndpoint:
    """Test suite for PUT /api/v1/settings/{key}."""

    async def test_update_integer_setting(self, client, db):
        response = await client.put(
            "/api/v1/settings/webhook_request_timeout", json={"value": "30"}
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["value"] == "30"
        assert await SettingsService.get_int(db, "webhook_request_timeout") == 30

    async def test_out_of_range_is_422(self, client):
        response = await client.put(
            "/api/v1/settings/webhook_request_timeout", json={"value": "500"}
        )

        assert response.status_code == 422
        assert response.json()["detail"][0]["field"] == "webhook_request_timeout"

    async def test_non_integer_is_422(self, client):
        response = await client.put(
            "/api/v1/settings/webhook_retry_sweep_interval", json={"value": "soon"}
        )
        assert response.status_code == 422

    async def test_boolean_setting(self, client, db):
        ok = await client.put("/api/v1/settings/webhook_retry_client_errors", json={"value": "false"})
        bad = await client.put("/api/v1/settings/webhook_retry_client_errors", json={"value": "maybe"})

        assert ok.status_code == status.HTTP_200_OK
        assert bad.status_code == 422
        assert await SettingsService.get_bool(db, "webhook_retry_client_errors", default=True) is False

    async def test_unknown_key_is_404(self, client):
        response = await client.put("/api/v1/settings/no_such_setting", json={"value": "1"})
        assert response.status_code == status.HTTP_404_NOT_FOUND
