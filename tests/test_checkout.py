"""
Unit tests for Stripe checkout and webhook handling.

The stripe SDK is mocked; credits go to a real temporary ledger.
"""

import json
import os
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import pytest

from ai_chart_analyst.config.settings import PRICE_ENV_TOKENS, TOKEN_PACKAGES, ConfigurationError, Settings
from ai_chart_analyst.payments import create_checkout, handle_webhook, process_referral, verify_session
from ai_chart_analyst.payments.checkout import _get_stripe
from ai_chart_analyst.storage.db import RealtimeDatabase
from ai_chart_analyst.storage.repository import TokenLedger

SETTINGS = Settings(
    stripe_secret_key="sk_test_123",
    stripe_webhook_secret="whsec_123",
    site_url="https://app.example.com/",
    price_tokens={"price_7000": 7000, "price_40000": 40000},
)


@pytest.fixture
def mock_stripe():
    """Mock the lazily imported stripe module."""
    stripe = MagicMock()
    with patch('ai_chart_analyst.payments.checkout._get_stripe', return_value=stripe):
        yield stripe


def checkout_body(**overrides):
    body = {"priceId": "price_7000", "userId": "u1", "customerInfo": {"email": "ada@example.com", "name": "Ada"}}
    body.update(overrides)
    return json.dumps(body)


class TestCreateCheckout:
    """Test checkout session creation."""

    def test_method_not_allowed(self):
        """Test only POST is accepted."""
        assert create_checkout("GET", None, SETTINGS) == (405, {"message": "Method not allowed"})

    def test_invalid_body(self):
        """Test malformed JSON is rejected."""
        assert create_checkout("POST", "{", SETTINGS) == (400, {"message": "Invalid request body"})

    def test_missing_parameters(self):
        """Test price and user are required."""
        status, payload = create_checkout("POST", json.dumps({"priceId": "price_7000"}), SETTINGS)
        assert status == 400
        assert payload["message"] == "Missing required parameters"

    def test_unknown_price(self):
        """Test prices outside the configured packages are rejected."""
        status, payload = create_checkout("POST", checkout_body(priceId="price_other"), SETTINGS)
        assert (status, payload["message"]) == (400, "Invalid price ID")

    def test_missing_site_url(self):
        """Test a missing URL setting is a server error."""
        settings = Settings(stripe_secret_key="sk", price_tokens={"price_7000": 7000})
        status, payload = create_checkout("POST", checkout_body(), settings)
        assert status == 500
        assert payload["message"] == "Server configuration error: URL not set"

    def test_inactive_price(self, mock_stripe):
        """Test inactive prices are rejected."""
        mock_stripe.Price.retrieve.return_value = {"active": False}
        status, payload = create_checkout("POST", checkout_body(), SETTINGS)
        assert (status, payload["message"]) == (400, "Invalid or inactive price ID")
        mock_stripe.checkout.Session.create.assert_not_called()

    def test_success_creates_customer(self, mock_stripe):
        """Test a session is created for a new customer."""
        mock_stripe.Price.retrieve.return_value = {"active": True}
        mock_stripe.Customer.list.return_value = {"data": []}
        mock_stripe.Customer.create.return_value = {"id": "cus_1"}
        mock_stripe.checkout.Session.create.return_value = {"id": "cs_test_1"}

        assert create_checkout("POST", checkout_body(), SETTINGS) == (200, {"id": "cs_test_1"})

        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["customer"] == "cus_1"
        assert kwargs["line_items"] == [{"price": "price_7000", "quantity": 1}]
        assert kwargs["success_url"] == "https://app.example.com/profile?session_id={CHECKOUT_SESSION_ID}"
        assert kwargs["cancel_url"] == "https://app.example.com/profile"
        assert kwargs["metadata"]["userId"] == "u1"
        assert kwargs["metadata"]["price_id"] == "price_7000"

    def test_existing_customer_updated(self, mock_stripe):
        """Test an existing customer is reused."""
        mock_stripe.Price.retrieve.return_value = {"active": True}
        mock_stripe.Customer.list.return_value = {"data": [{"id": "cus_old"}]}
        mock_stripe.checkout.Session.create.return_value = {"id": "cs_test_2"}

        create_checkout("POST", checkout_body(), SETTINGS)

        mock_stripe.Customer.modify.assert_called_once_with("cus_old", name="Ada")
        mock_stripe.Customer.create.assert_not_called()
        assert mock_stripe.checkout.Session.create.call_args.kwargs["customer"] == "cus_old"

    def test_customer_failure_falls_back_to_email(self, mock_stripe):
        """Test checkout proceeds when the customer cannot be created."""
        mock_stripe.Price.retrieve.return_value = {"active": True}
        mock_stripe.Customer.list.side_effect = RuntimeError("stripe down")
        mock_stripe.checkout.Session.create.return_value = {"id": "cs_test_3"}

        status, _ = create_checkout("POST", checkout_body(), SETTINGS)

        assert status == 200
        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["customer_email"] == "ada@example.com"
        assert "customer" not in kwargs

    def test_session_failure(self, mock_stripe):
        """Test Stripe errors surface as a server error."""
        mock_stripe.Price.retrieve.return_value = {"active": True}
        mock_stripe.checkout.Session.create.side_effect = RuntimeError("card declined")

        status, payload = create_checkout("POST", checkout_body(customerInfo=None), SETTINGS)
        assert status == 500
        assert payload == {"message": "Failed to create checkout session", "error": "card declined"}


class TestWebhook:
    """Test crediting tokens from webhook events."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.ledger = TokenLedger(RealtimeDatabase(os.path.join(self.temp_dir, "test.db")))

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir)

    @staticmethod
    def completed_event(payment_status="paid", metadata=None):
        return {
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_test_1",
                "payment_status": payment_status,
                "metadata": {"userId": "u1", "price_id": "price_7000"} if metadata is None else metadata,
            }},
        }

    def test_secret_not_configured(self):
        """Test a missing webhook secret is a server error."""
        settings = Settings(stripe_secret_key="sk")
        status, payload = handle_webhook(b"{}", "sig", settings, self.ledger)
        assert (status, payload["message"]) == (500, "Webhook secret not configured")

    def test_bad_signature(self, mock_stripe):
        """Test events failing verification are rejected."""
        mock_stripe.Webhook.construct_event.side_effect = ValueError("No signatures found")
        status, payload = handle_webhook(b"{}", "bad", SETTINGS, self.ledger)
        assert status == 400
        assert "No signatures found" in payload["message"]

    def test_other_events_acknowledged(self, mock_stripe):
        """Test unrelated events are acknowledged and ignored."""
        mock_stripe.Webhook.construct_event.return_value = {"type": "invoice.paid", "data": {"object": {}}}
        assert handle_webhook(b"{}", "sig", SETTINGS, self.ledger) == (200, {"received": True})

    def test_unpaid_session(self, mock_stripe):
        """Test unpaid sessions credit nothing."""
        mock_stripe.Webhook.construct_event.return_value = self.completed_event(payment_status="unpaid")
        status, payload = handle_webhook(b"{}", "sig", SETTINGS, self.ledger)
        assert (status, payload["message"]) == (200, "Payment not completed, no action taken")

    def test_missing_user(self, mock_stripe):
        """Test sessions without a user id credit nothing."""
        mock_stripe.Webhook.construct_event.return_value = self.completed_event(metadata={})
        status, payload = handle_webhook(b"{}", "sig", SETTINGS, self.ledger)
        assert (status, payload["message"]) == (200, "No user ID found in session metadata")

    def test_credit_from_line_items(self, mock_stripe):
        """Test tokens are credited from the purchased line items, once."""
        mock_stripe.Webhook.construct_event.return_value = self.completed_event()
        mock_stripe.checkout.Session.list_line_items.return_value = {
            "data": [{"price": {"id": "price_40000"}, "quantity": 1}]
        }

        first = handle_webhook(b"{}", "sig", SETTINGS, self.ledger)
        second = handle_webhook(b"{}", "sig", SETTINGS, self.ledger)

        assert first == (200, {"received": True, "tokensAdded": 40000})
        assert second == (200, {"received": True, "duplicate": True})
        assert self.ledger.get_balance("u1").tokens == 40000
        assert self.ledger.get_purchase_history("u1")[0].price_id == "price_40000"

    def test_credit_from_metadata_fallback(self, mock_stripe):
        """Test the session metadata is used when line items are unavailable."""
        mock_stripe.Webhook.construct_event.return_value = self.completed_event()
        mock_stripe.checkout.Session.list_line_items.side_effect = RuntimeError("timeout")

        status, payload = handle_webhook(b"{}", "sig", SETTINGS, self.ledger)

        assert (status, payload["tokensAdded"]) == (200, 7000)

    def test_unknown_price(self, mock_stripe):
        """Test unknown prices credit nothing."""
        mock_stripe.Webhook.construct_event.return_value = self.completed_event()
        mock_stripe.checkout.Session.list_line_items.return_value = {
            "data": [{"price": {"id": "price_unknown"}, "quantity": 1}]
        }
        status, payload = handle_webhook(b"{}", "sig", SETTINGS, self.ledger)
        assert (status, payload["message"]) == (200, "Could not determine token amount to add")

    def test_credit_failure_asks_for_retry(self, mock_stripe):
        """Test a failed credit returns 500 so Stripe retries."""
        mock_stripe.Webhook.construct_event.return_value = self.completed_event()
        mock_stripe.checkout.Session.list_line_items.return_value = {
            "data": [{"price": {"id": "price_7000"}, "quantity": 1}]
        }
        with patch.object(self.ledger, "credit_tokens", side_effect=RuntimeError("db down")):
            status, payload = handle_webhook(b"{}", "sig", SETTINGS, self.ledger)
        assert (status, payload["message"]) == (500, "Failed to update tokens")

    def test_first_purchase_pays_referrer(self, mock_stripe):
        """Test a credited purchase pays the referral purchase bonus once."""
        self.ledger.ensure_user("ref", 0)
        self.ledger.db.set("users/ref/referralCode", "ADA123")
        self.ledger.ensure_user("u1", 0)
        self.ledger.process_referral("u1", "ADA123")
        mock_stripe.Webhook.construct_event.return_value = self.completed_event()
        mock_stripe.checkout.Session.list_line_items.return_value = {
            "data": [{"price": {"id": "price_7000"}, "quantity": 1}]
        }

        handle_webhook(b"{}", "sig", SETTINGS, self.ledger)
        handle_webhook(b"{}", "sig", SETTINGS, self.ledger)

        assert self.ledger.get_balance("ref").tokens == 3000
        assert self.ledger.get_balance("u1").tokens == 7100


class TestVerifySession:
    """Test crediting tokens from the checkout success redirect."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.ledger = TokenLedger(RealtimeDatabase(os.path.join(self.temp_dir, "test.db")))

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir)

    @staticmethod
    def paid_session(payment_status="paid", metadata=None):
        return {
            "id": "cs_test_1",
            "payment_status": payment_status,
            "metadata": {"userId": "u1", "price_id": "price_7000"} if metadata is None else metadata,
        }

    def test_method_not_allowed(self):
        """Test only GET is accepted."""
        status, payload = verify_session("POST", "cs_test_1", SETTINGS, self.ledger)
        assert (status, payload["error"]) == (405, "Method not allowed")

    def test_session_id_required(self):
        """Test the session id is required."""
        status, payload = verify_session("GET", None, SETTINGS, self.ledger)
        assert (status, payload["error"]) == (400, "Session ID is required")

    def test_unpaid_session(self, mock_stripe):
        """Test unpaid sessions credit nothing."""
        mock_stripe.checkout.Session.retrieve.return_value = self.paid_session(payment_status="unpaid")
        status, payload = verify_session("GET", "cs_test_1", SETTINGS, self.ledger)
        assert status == 400
        assert payload == {"success": False, "error": "Payment not completed", "status": "unpaid"}

    def test_missing_user(self, mock_stripe):
        """Test sessions without a user id credit nothing."""
        mock_stripe.checkout.Session.retrieve.return_value = self.paid_session(metadata={})
        status, payload = verify_session("GET", "cs_test_1", SETTINGS, self.ledger)
        assert (status, payload["error"]) == (400, "No user ID found in session metadata")

    def test_retrieve_failure(self, mock_stripe):
        """Test Stripe errors are server errors."""
        mock_stripe.checkout.Session.retrieve.side_effect = RuntimeError("no such session")
        status, payload = verify_session("GET", "cs_test_1", SETTINGS, self.ledger)
        assert status == 500
        assert "no such session" in payload["error"]

    def test_credit_once_with_webhook(self, mock_stripe):
        """Test the redirect and the webhook credit a session only once."""
        mock_stripe.checkout.Session.retrieve.return_value = self.paid_session()
        mock_stripe.checkout.Session.list_line_items.return_value = {
            "data": [{"price": {"id": "price_7000"}, "quantity": 1}]
        }
        mock_stripe.Webhook.construct_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": self.paid_session()},
        }

        status, payload = verify_session("GET", "cs_test_1", SETTINGS, self.ledger)
        assert status == 200
        assert payload == {"success": True, "tokensAdded": 7000, "newTotal": 7000, "alreadyProcessed": False}

        assert handle_webhook(b"{}", "sig", SETTINGS, self.ledger) == (200, {"received": True, "duplicate": True})

        _, again = verify_session("GET", "cs_test_1", SETTINGS, self.ledger)
        assert again["alreadyProcessed"] is True
        assert self.ledger.get_balance("u1").tokens == 7000

    def test_unknown_price(self, mock_stripe):
        """Test unknown prices are rejected."""
        mock_stripe.checkout.Session.retrieve.return_value = self.paid_session(
            metadata={"userId": "u1"}
        )
        mock_stripe.checkout.Session.list_line_items.return_value = {
            "data": [{"price": {"id": "price_unknown"}, "quantity": 1}]
        }
        status, payload = verify_session("GET", "cs_test_1", SETTINGS, self.ledger)
        assert (status, payload["error"]) == (400, "Invalid price ID: None")


class TestProcessReferral:
    """Test the referral signup handler."""

    def setup_method(self):
        """Set up a referrer with a code and a new user."""
        self.temp_dir = tempfile.mkdtemp()
        self.ledger = TokenLedger(RealtimeDatabase(os.path.join(self.temp_dir, "test.db")))
        self.ledger.ensure_user("ref", 0)
        self.ledger.db.set("users/ref/referralCode", "ADA123")
        self.ledger.ensure_user("new", 0)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir)

    def test_method_not_allowed(self):
        """Test only POST is accepted."""
        assert process_referral("GET", None, self.ledger) == (405, {"error": "Method not allowed"})

    def test_missing_fields(self):
        """Test code and user are required."""
        status, payload = process_referral("POST", json.dumps({"userId": "new"}), self.ledger)
        assert status == 400
        assert "referralCode and userId" in payload["error"]

    def test_unknown_code(self):
        """Test unknown codes are not found."""
        body = json.dumps({"userId": "new", "referralCode": "NOPE"})
        status, payload = process_referral("POST", body, self.ledger)
        assert status == 404
        assert "Invalid referral code" in payload["error"]

    def test_self_referral(self):
        """Test users cannot use their own code."""
        body = json.dumps({"userId": "ref", "referralCode": "ADA123"})
        assert process_referral("POST", body, self.ledger)[0] == 400

    def test_referral_credited_once(self):
        """Test bonuses are credited once per referred user."""
        body = json.dumps({
            "userId": "new", "referralCode": "ADA123", "userEmail": "new@example.com", "authProvider": "google"
        })

        status, payload = process_referral("POST", body, self.ledger)
        assert status == 200
        assert payload["referralTokens"] == 1000
        assert payload["newUserBonus"] == 100
        assert self.ledger.db.get("users/ref/referrals/new/authProvider") == "google"

        status, payload = process_referral("POST", body, self.ledger)
        assert (status, payload["alreadyProcessed"]) == (200, True)
        assert self.ledger.get_balance("ref").tokens == 1000
        assert self.ledger.get_balance("new").tokens == 100


class TestPackages:
    """Test package catalogue and SDK loading."""

    def test_packages(self):
        """Test the three current packages and the price variables derived from the catalogue."""
        current = [(p.tokens, p.price_usd) for p in TOKEN_PACKAGES if p.price_usd is not None]
        assert current == [(7000, 10), (40000, 50), (100000, 100)]
        assert PRICE_ENV_TOKENS["STRIPE_PRICE_40000_TOKENS"] == 40000
        assert PRICE_ENV_TOKENS["STRIPE_PRICE_10_TOKENS"] == 10
        assert len(PRICE_ENV_TOKENS) == len(TOKEN_PACKAGES)

    def test_stripe_requires_secret(self):
        """Test the SDK is not loaded without a secret key."""
        with pytest.raises(ConfigurationError, match="STRIPE_SECRET_KEY"):
            _get_stripe(Settings())
