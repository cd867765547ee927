"""
Tests for request middleware and exception handlers
"""
import pytest
import httpx


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    async def test_generates_correlation_id(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/health")

        assert len(response.headers["X-Correlation-ID"]) == 8

    @pytest.mark.unit
    async def test_propagates_incoming_correlation_id(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/health", headers={"X-Correlation-ID": "upstream1"})

        assert response.headers["X-Correlation-ID"] == "upstream1"


class TestExceptionHandlers:

    @pytest.mark.unit
    async def test_app_exception_rendered_as_error_envelope(self, test_client: httpx.AsyncClient) -> None:
        from unittest.mock import patch

        from app.core.config import settings

        with patch.object(settings, "ADMIN_API_KEY", "k"):
            response = await test_client.post(
                "/api/admin/webhook-retries/424242/retry",
                headers={"X-Admin-API-Key": "k", "X-Correlation-ID": "trace123"},
            )

        assert response.status_code == 404
        assert response.headers["X-Correlation-ID"] == "trace123"
        body = response.json()
        assert body["error"]["code"] == "ERR_7001"
        assert body["error"]["message"] == "Failed webhook event not found: 424242"
        assert body["error"]["details"]["identifier"] == "424242"
