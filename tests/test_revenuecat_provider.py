"""Tests for the RevenueCat adapter.

Covers:
- Subscription status state machine and record selection
- Product-to-plan mapping (including unmapped passthrough)
- App-store-only operations returning NOT_SUPPORTED_BY_PROVIDER
- Webhook auth (Bearer and bare token) and shape checks
- HTTP retry: 429 with Retry-After, 5xx, timeouts, exhaustion
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from scanmyscale.errors import ProviderTimeoutError
from scanmyscale.payments.base import Capability, CreateCheckoutData, CreateCustomerData, ProviderConfig
from scanmyscale.payments.revenuecat_provider import (
    RevenueCatProvider,
    derive_status,
    map_product_to_plan,
    select_subscription,
)
from scanmyscale.payments.types import BillingInterval, ResultCode, SubscriptionStatus, WebhookEventType

NOW = datetime(2026, 1, 15, tzinfo=timezone.utc)
REQUEST = "scanmyscale.payments.revenuecat_provider.requests.request"


def _response(status=200, body=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.content = b"{}" if body is not None else b""
    response.json.return_value = body
    response.text = ""
    return response


def _subscriber(subscriptions, app_user_id="user-1"):
    return {"subscriber": {
        "original_app_user_id": app_user_id,
        "first_seen": "2025-01-01T00:00:00Z",
        "entitlements": {"pro": {}},
        "subscriptions": subscriptions,
    }}


def _record(expires="2026-02-01T00:00:00Z", purchased="2026-01-01T00:00:00Z", **extra):
    record = {"expires_date": expires, "purchase_date": purchased, "store": "app_store", "is_sandbox": True}
    record.update(extra)
    return record


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def provider(sleeps):
    provider = RevenueCatProvider(sleep=sleeps.append)
    provider.initialize(ProviderConfig(
        api_key="rc_test_fake",
        webhook_secret="rc_webhook_test_secret",
        metadata={"base_url": "https://api.revenuecat.test/"},
    ))
    return provider


class TestDeriveStatus:

    def test_active(self):
        assert derive_status(_record(), NOW) == SubscriptionStatus.ACTIVE

    def test_billing_issue_is_past_due(self):
        record = _record(billing_issues_detected_at="2026-01-10T00:00:00Z")
        assert derive_status(record, NOW) == SubscriptionStatus.PAST_DUE

    def test_unsubscribed_but_paid_through_stays_active(self):
        record = _record(unsubscribe_detected_at="2026-01-10T00:00:00Z")
        assert derive_status(record, NOW) == SubscriptionStatus.ACTIVE

    def test_unsubscribed_and_expired_is_canceled(self):
        record = _record(expires="2026-01-01T00:00:00Z", unsubscribe_detected_at="2025-12-20T00:00:00Z")
        assert derive_status(record, NOW) == SubscriptionStatus.CANCELED

    def test_expired_is_canceled(self):
        assert derive_status(_record(expires="2026-01-01T00:00:00Z"), NOW) == SubscriptionStatus.CANCELED

    def test_no_expiry_is_active(self):
        assert derive_status({"purchase_date": "2026-01-01T00:00:00Z"}, NOW) == SubscriptionStatus.ACTIVE


class TestSelectSubscription:

    def test_active_record_wins(self):
        subs = {
            "starter_monthly_usd": _record(expires="2025-06-01T00:00:00Z", purchased="2025-12-01T00:00:00Z"),
            "pro_monthly_usd": _record(),
        }
        assert select_subscription(subs, NOW)[0] == "pro_monthly_usd"

    def test_latest_purchase_when_none_active(self):
        subs = {
            "starter_monthly_usd": _record(expires="2025-06-01T00:00:00Z", purchased="2025-05-01T00:00:00Z"),
            "premium_yearly_usd": _record(expires="2025-12-01T00:00:00Z", purchased="2024-12-01T00:00:00Z"),
            "pro_monthly_usd": _record(expires="2025-11-01T00:00:00Z", purchased="2025-10-01T00:00:00Z"),
        }
        assert select_subscription(subs, NOW)[0] == "pro_monthly_usd"

    def test_empty(self):
        assert select_subscription({}, NOW) is None


class TestProductMapping:

    def test_known_and_legacy_products(self):
        assert map_product_to_plan("pro_yearly_usd") == "scanmyscale_pro_yearly_usd"
        assert map_product_to_plan("premium_monthly") == "scanmyscale_premium_monthly_usd"

    def test_unmapped_product_passes_through(self):
        assert map_product_to_plan("lifetime_unlock") == "lifetime_unlock"


class TestSubscriptions:

    def test_get_subscription(self, provider):
        body = _subscriber({"premium_yearly_usd": _record(expires="2026-12-01T00:00:00Z")})
        with patch(REQUEST, return_value=_response(body=body)) as mock_request:
            result = provider.get_subscription("user-1", now=NOW)

        sub = result.data
        assert sub.tier == "premium"
        assert sub.plan_id == "scanmyscale_premium_yearly_usd"
        assert sub.provider_subscription_id == "premium_yearly_usd"
        assert sub.customer_id == "user-1"
        assert sub.interval == BillingInterval.YEAR
        assert sub.amount == 2999
        assert sub.current_period_end == datetime(2026, 12, 1, tzinfo=timezone.utc)

        args, kwargs = mock_request.call_args
        assert args == ("GET", "https://api.revenuecat.test/v1/subscribers/user-1")
        assert kwargs["headers"]["Authorization"] == "Bearer rc_test_fake"

    def test_unmapped_product_falls_back_to_default_tier(self, provider):
        body = _subscriber({"lifetime_unlock": _record()})
        with patch(REQUEST, return_value=_response(body=body)):
            sub = provider.get_subscription("user-1", now=NOW).data

        assert sub.plan_id == "lifetime_unlock"
        assert sub.tier == "starter"
        assert sub.amount == 0

    def test_unsubscribed_marks_cancel_at_period_end(self, provider):
        body = _subscriber({"pro_monthly_usd": _record(unsubscribe_detected_at="2026-01-10T00:00:00Z")})
        with patch(REQUEST, return_value=_response(body=body)):
            sub = provider.get_subscription("user-1", now=NOW).data

        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.cancel_at_period_end is True

    def test_no_subscriptions(self, provider):
        with patch(REQUEST, return_value=_response(body=_subscriber({}))):
            assert provider.get_subscription("user-1").code == ResultCode.NO_SUBSCRIPTIONS_FOUND

    def test_unknown_subscriber(self, provider):
        with patch(REQUEST, return_value=_response(404, {"message": "Subscriber not found"})):
            assert provider.get_subscription("user-x").code == ResultCode.SUBSCRIPTION_NOT_FOUND

    def test_find_customer_subscription_uses_user_id(self, provider):
        with patch(REQUEST, return_value=_response(body=_subscriber({"pro_monthly_usd": _record()}))) as mock_request:
            provider.find_customer_subscription("user-1")
        assert mock_request.call_args.args[1].endswith("/v1/subscribers/user-1")


class TestCustomers:

    def test_create_customer_is_local(self, provider):
        with patch(REQUEST) as mock_request:
            result = provider.create_customer(CreateCustomerData(email="a@example.com", user_id="user-1"))
        assert result.data.provider_id == "user-1"
        mock_request.assert_not_called()

    def test_subscriber_id_mismatch(self, provider):
        with patch(REQUEST, return_value=_response(body=_subscriber({}, app_user_id="someone-else"))):
            assert provider.get_customer("user-1").code == ResultCode.CUSTOMER_ID_MISMATCH

    def test_get_customer(self, provider):
        with patch(REQUEST, return_value=_response(body=_subscriber({}))):
            customer = provider.get_customer("user-1").data
        assert customer.metadata["entitlements"] == ["pro"]
        assert customer.created_at == datetime(2025, 1, 1, tzinfo=timezone.utc)


class TestAppStoreOnlyOperations:

    def test_capabilities(self, provider):
        assert provider.supports(Capability.SUBSCRIPTION_SYNC)
        assert not provider.supports(Capability.HOSTED_CHECKOUT)
        assert not provider.supports(Capability.BILLING_PORTAL)

    def test_not_supported_results(self, provider):
        checkout = CreateCheckoutData(
            customer_id="user-1", plan_id="pro", price_id="pro", user_id="user-1",
            success_url="https://x/success", cancel_url="https://x/cancel",
        )
        for result in (
            provider.create_checkout_session(checkout),
            provider.cancel_subscription("pro_monthly_usd"),
            provider.resume_subscription("pro_monthly_usd"),
            provider.change_subscription_plan("pro_monthly_usd", "premium"),
            provider.update_customer("user-1", {"email": "b@example.com"}),
        ):
            assert not result.success
            assert result.code == ResultCode.NOT_SUPPORTED_BY_PROVIDER

    def test_portal_points_to_store_settings(self, provider):
        result = provider.get_customer_portal_url("user-1", "https://x/account")
        assert result.code == ResultCode.NOT_SUPPORTED_BY_PROVIDER
        assert "Google Play" in result.error

    def test_static_plans(self, provider):
        assert len(provider.get_plans("USD").data) == 6
        assert provider.get_plans("BRL").data == []
        assert provider.get_plan("pro_yearly_usd").data.amount == 3999
        assert provider.get_plan("gold").code == ResultCode.PLAN_NOT_FOUND

    def test_initialize_requires_key(self):
        with pytest.raises(ValueError):
            RevenueCatProvider().initialize(ProviderConfig(api_key=""))


class TestRetry:

    def test_rate_limit_honors_retry_after(self, provider, sleeps):
        responses = [
            _response(429, {"message": "slow down"}, headers={"Retry-After": "5"}),
            _response(body=_subscriber({"pro_monthly_usd": _record()})),
        ]
        with patch(REQUEST, side_effect=responses) as mock_request:
            result = provider.get_subscription("user-1", now=NOW)

        assert result.success
        assert mock_request.call_count == 2
        assert sleeps == [5.0]

    def test_server_errors_back_off_exponentially(self, provider, sleeps):
        responses = [
            _response(500, {"message": "oops"}),
            _response(503, {"message": "oops"}),
            _response(body=_subscriber({"pro_monthly_usd": _record()})),
        ]
        with patch(REQUEST, side_effect=responses):
            assert provider.get_subscription("user-1", now=NOW).success
        assert sleeps == [1.0, 2.0]

    def test_server_errors_are_bounded(self, provider, sleeps):
        with patch(REQUEST, return_value=_response(502, {"message": "bad gateway"})) as mock_request:
            result = provider.get_subscription("user-1")

        assert result.code == ResultCode.SUBSCRIPTION_FETCH_FAILED
        assert mock_request.call_count == 4
        assert len(sleeps) == 3

    def test_timeout_is_retried(self, provider, sleeps):
        responses = [requests.Timeout("slow"), _response(body=_subscriber({"pro_monthly_usd": _record()}))]
        with patch(REQUEST, side_effect=responses):
            assert provider.get_subscription("user-1", now=NOW).success
        assert sleeps == [1.0]

    def test_timeouts_exhausted_raise(self, provider):
        with patch(REQUEST, side_effect=requests.Timeout("slow")) as mock_request:
            with pytest.raises(ProviderTimeoutError):
                provider.get_subscription("user-1")
        assert mock_request.call_count == 4

    def test_client_errors_are_not_retried(self, provider, sleeps):
        with patch(REQUEST, return_value=_response(400, {"message": "bad"})) as mock_request:
            assert provider.get_subscription("user-1").code == ResultCode.SUBSCRIPTION_FETCH_FAILED
        assert mock_request.call_count == 1
        assert sleeps == []


class TestWebhooks:

    def test_bearer_and_bare_tokens(self, provider):
        assert provider.verify_webhook(b"{}", "Bearer rc_webhook_test_secret")
        assert provider.verify_webhook(b"{}", "rc_webhook_test_secret")

    def test_wrong_or_missing_token(self, provider):
        assert not provider.verify_webhook(b"{}", "Bearer nope")
        assert not provider.verify_webhook(b"{}", None)

    def test_shape_check(self, provider):
        assert provider.is_webhook_event({"event": {"type": "RENEWAL", "app_user_id": "user-1"}})
        assert provider.is_webhook_event({"event": {
            "type": "RENEWAL", "app_user_id": "user-1", "product_id": "pro_monthly_usd", "entitlement_ids": ["pro"],
        }})
        assert not provider.is_webhook_event({"event": {"type": "RENEWAL"}})
        assert not provider.is_webhook_event({"event": {"type": "RENEWAL", "app_user_id": "u", "product_id": 5}})
        assert not provider.is_webhook_event({"event": {"type": "RENEWAL", "app_user_id": "u", "entitlements": "pro"}})
        assert not provider.is_webhook_event({"type": "RENEWAL"})

    def test_initial_purchase_fetches_subscription(self, provider):
        event = provider.to_webhook_event({"event": {
            "id": "rc_evt_1",
            "type": "INITIAL_PURCHASE",
            "app_user_id": "user-1",
            "product_id": "pro_monthly_usd",
            "event_timestamp_ms": 1767225600000,
        }})
        with patch(REQUEST, return_value=_response(body=_subscriber({"pro_monthly_usd": _record()}))):
            result = provider.process_webhook(event)

        assert result.data.type == WebhookEventType.SUBSCRIPTION_CREATED
        assert result.data.subscription.tier == "pro"
        assert result.data.customer_id == "user-1"
        assert event.timestamp == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_billing_issue_does_not_refetch(self, provider):
        event = provider.to_webhook_event({"event": {"id": "rc_evt_2", "type": "BILLING_ISSUE", "app_user_id": "user-1"}})
        with patch(REQUEST) as mock_request:
            result = provider.process_webhook(event)

        assert result.data.type == WebhookEventType.PAYMENT_FAILED
        assert result.data.subscription is None
        mock_request.assert_not_called()

    def test_unsupported_event(self, provider):
        event = provider.to_webhook_event({"event": {"id": "rc_evt_3", "type": "TEST", "app_user_id": "user-1"}})
        assert provider.process_webhook(event).code == ResultCode.UNSUPPORTED_EVENT_TYPE

    def test_refetch_failure_fails_processing(self, provider, sleeps):
        event = provider.to_webhook_event({"event": {"id": "rc_evt_4", "type": "EXPIRATION", "app_user_id": "user-1"}})
        with patch(REQUEST, return_value=_response(503, {"message": "unavailable"})):
            result = provider.process_webhook(event)

        assert result.code == ResultCode.WEBHOOK_PROCESSING_FAILED
        assert sleeps == [1.0, 2.0, 4.0]

    def test_refetch_timeout_fails_processing(self, provider):
        event = provider.to_webhook_event({"event": {"id": "rc_evt_5", "type": "CANCELLATION", "app_user_id": "user-1"}})
        with patch(REQUEST, side_effect=requests.Timeout("slow")):
            result = provider.process_webhook(event)

        assert result.code == ResultCode.WEBHOOK_PROCESSING_FAILED

    def test_subscriber_without_subscriptions_is_not_a_failure(self, provider):
        event = provider.to_webhook_event({"event": {"id": "rc_evt_6", "type": "EXPIRATION", "app_user_id": "user-1"}})
        with patch(REQUEST, return_value=_response(body=_subscriber({}))):
            result = provider.process_webhook(event)

        assert result.success
        assert result.data.subscription is None
