"""
Integration tests for health check routes.
"""

import pytest
from fastapi import status
from httpx import AsyncClient


class TestHealthEndpoints:
    """Tests for GET /health and GET /health/services."""

    @pytest.mark.asyncio
    async def test_basic_health(self, async_client: AsyncClient):
        response = await async_client.get("/api/v1/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_services_report_gateway_configuration(self, async_client: AsyncClient):
        response = await async_client.get("/api/v1/health/services")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"

        razorpay = data["services"]["razorpay"]
        assert razorpay["configured"] is True
        assert razorpay["webhook_secret_set"] is True
        assert razorpay["currency"] == "INR"
        assert len(razorpay["plans"]) == 4
        assert "plan_R7G7VNbsYt55dG" in razorpay["plans"]

        assert data["services"]["webhook_dedup"]["configured"] is False
