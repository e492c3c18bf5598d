"""
Tests for widget authentication and rate limiting through the API

Covers the X-Merchant-Key dependency, the domain whitelist, the merchant and
IP rate limit tiers and the lazy quota reset, exercised via /api/widget/verify.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from tryon_widget_server.domain import MerchantStatus

VERIFY_URL = "/api/widget/verify"


class TestMerchantKey:
    """Test suite for key authentication."""

    def test_missing_key(self, client):
        """Test 401 MISSING_MERCHANT_KEY without a header."""
        response = client.post(VERIFY_URL)

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "MISSING_MERCHANT_KEY"
        assert body["error"]["userMessage"]
        assert body["error"]["requestId"]

    def test_invalid_key(self, client):
        """Test 401 INVALID_MERCHANT_KEY for an unknown key."""
        response = client.post(VERIFY_URL, headers={"X-Merchant-Key": "mk_live_doesnotexist"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_MERCHANT_KEY"

    def test_live_key_verifies(self, client, merchant, live_headers):
        """Test a valid live key returns the account summary."""
        response = client.post(VERIFY_URL, headers=live_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["merchant"]["id"] == merchant.id
        assert data["merchant"]["email"] == merchant.email
        assert "liveKey" not in data["merchant"]
        assert data["isTestMode"] is False
        assert data["quota"]["limit"] == 100

    def test_test_key_flags_test_mode(self, client, test_headers):
        """Test that a test key is reported as test mode."""
        response = client.post(VERIFY_URL, headers=test_headers)

        assert response.status_code == 200
        assert response.json()["data"]["isTestMode"] is True

    def test_suspended_merchant_rejected(self, client, make_merchant):
        """Test keys of a suspended merchant are invalid."""
        merchant = asyncio.run(make_merchant(status=MerchantStatus.SUSPENDED))

        response = client.post(VERIFY_URL, headers={"X-Merchant-Key": merchant.live_key})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_MERCHANT_KEY"


class TestDomainWhitelist:
    """Test suite for origin checks."""

    def test_allowed_origin(self, client, live_headers):
        """Test a whitelisted origin with a live key."""
        headers = {**live_headers, "Origin": "https://shop.example.com"}

        response = client.post(VERIFY_URL, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["originDomain"] == "shop.example.com"

    def test_wildcard_origin(self, client, live_headers):
        """Test a wildcard-matched origin with a live key."""
        headers = {**live_headers, "Origin": "https://cdn.example.org"}

        assert client.post(VERIFY_URL, headers=headers).status_code == 200

    def test_referer_used_without_origin(self, client, live_headers):
        """Test Referer fallback for the domain check."""
        headers = {**live_headers, "Referer": "https://evil.example.net/page"}

        response = client.post(VERIFY_URL, headers=headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "DOMAIN_NOT_ALLOWED"

    def test_disallowed_origin(self, client, live_headers):
        """Test 403 DOMAIN_NOT_ALLOWED."""
        headers = {**live_headers, "Origin": "https://evil.example.net"}

        response = client.post(VERIFY_URL, headers=headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "DOMAIN_NOT_ALLOWED"

    def test_test_key_any_origin(self, client, test_headers):
        """Test that test keys skip the whitelist."""
        headers = {**test_headers, "Origin": "http://localhost:3000"}

        assert client.post(VERIFY_URL, headers=headers).status_code == 200


class TestRateLimits:
    """Test suite for the merchant and IP tiers."""

    def test_rate_limit_headers_on_success(self, client, live_headers):
        """Test X-RateLimit-* headers reflect the tighter tier."""
        response = client.post(VERIFY_URL, headers=live_headers)

        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "19"
        assert "X-RateLimit-Reset" in response.headers
        assert "Retry-After" not in response.headers

    def test_ip_limit_21st_request_rejected(self, client, live_headers):
        """Test the 21st request from one IP within a minute is rejected."""
        for _ in range(20):
            assert client.post(VERIFY_URL, headers=live_headers).status_code == 200

        response = client.post(VERIFY_URL, headers=live_headers)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) >= 1

    def test_merchant_limit_101st_request_rejected(self, client, services, live_headers):
        """Test the 101st request for one merchant within a minute is rejected."""
        for i in range(100):
            headers = {**live_headers, "X-Forwarded-For": f"10.0.{i // 200}.{i % 200}"}
            assert client.post(VERIFY_URL, headers=headers).status_code == 200

        response = client.post(VERIFY_URL, headers={**live_headers, "X-Forwarded-For": "10.1.0.1"})

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert services.metrics.rate_limit_rejections == 1

    def test_other_merchant_unaffected(self, client, make_merchant, live_headers):
        """Test merchant limits are per merchant."""
        other = asyncio.run(make_merchant())
        for i in range(20):
            client.post(VERIFY_URL, headers={**live_headers, "X-Forwarded-For": f"10.2.0.{i}"})

        response = client.post(
            VERIFY_URL,
            headers={"X-Merchant-Key": other.live_key, "X-Forwarded-For": "10.3.0.1"},
        )

        assert response.status_code == 200

    def test_forwarded_for_from_untrusted_peer_ignored(self, client, services, live_headers):
        """Test rotating X-Forwarded-For does not evade the IP limit without a trusted proxy."""
        services.settings.trusted_proxies = []
        for i in range(20):
            headers = {**live_headers, "X-Forwarded-For": f"10.4.0.{i}"}
            assert client.post(VERIFY_URL, headers=headers).status_code == 200

        response = client.post(VERIFY_URL, headers={**live_headers, "X-Forwarded-For": "10.4.1.1"})

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "20"

    def test_rate_limit_checked_before_business_logic(self, client, services, live_headers, product_payload):
        """Test rejected requests do not create sessions."""
        for _ in range(20):
            client.post(VERIFY_URL, headers=live_headers)

        response = client.post("/api/widget/session", json=product_payload, headers=live_headers)

        assert response.status_code == 429
        assert services.storage.list_sessions() == []


class TestQuotaReset:
    """Test lazy quota reset on authenticated requests."""

    def test_overdue_quota_reset_on_request(self, client, make_merchant, storage):
        """Test an elapsed reset date zeroes the counter."""
        merchant = asyncio.run(make_merchant(
            quota_used=100,
            quota_reset_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        ))

        response = client.post(VERIFY_URL, headers={"X-Merchant-Key": merchant.live_key})

        quota = response.json()["data"]["quota"]
        assert quota["used"] == 0
        assert quota["remaining"] == 100
        assert quota["resetsAt"] is not None
