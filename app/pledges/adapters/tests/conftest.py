"""
Pytest fixtures for Stripe adapter tests.

This module provides fixtures for testing the Stripe adapter, including
mock Stripe API responses and error conditions.

Sections:
    - Mock Stripe Response Fixtures
    - Mock Stripe Error Fixtures
    - Mock Stripe Client Fixtures
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe


# =============================================================================
# Mock Stripe Response Fixtures
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@dataclass
class MockStripeList:
    """Mock Stripe list response with data attribute."""

    items: list[MockStripeObject]
    has_more: bool = False

    @property
    def data(self) -> list[MockStripeObject]:
        return self.items


@pytest.fixture
def mock_subscription():
    """Create a mock Subscription response."""

    def _create(
        id: str = "sub_test123",
        status: str = "active",
        unit_amount: int = 2500,
        quantity: int = 1,
        customer: str = "cus_test123",
        created: int = 1_700_000_000,
        livemode: bool = False,
        metadata: dict | None = None,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "subscription",
                "status": status,
                "customer": customer,
                "created": created,
                "start_date": created,
                "livemode": livemode,
                "metadata": metadata or {},
                "items": {
                    "data": [
                        {"price": {"unit_amount": unit_amount}, "quantity": quantity}
                    ]
                },
            }
        )

    return _create


@pytest.fixture
def mock_payment_intent():
    """Create a mock PaymentIntent response."""

    def _create(
        id: str = "pi_test123",
        status: str = "succeeded",
        amount: int = 2500,
        amount_received: int | None = None,
        customer: str = "cus_test123",
        created: int = 1_700_000_000,
        livemode: bool = False,
        metadata: dict | None = None,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "payment_intent",
                "status": status,
                "amount": amount,
                "amount_received": amount if amount_received is None else amount_received,
                "customer": customer,
                "created": created,
                "livemode": livemode,
                "metadata": metadata or {},
            }
        )

    return _create


@pytest.fixture
def mock_checkout_session():
    """Create a mock Checkout Session response."""

    def _create(
        id: str = "cs_test123",
        status: str = "complete",
        mode: str = "subscription",
        subscription: Any = None,
        payment_intent: Any = None,
        amount_total: int = 2500,
        customer: str = "cus_test123",
        livemode: bool = False,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "checkout.session",
                "status": status,
                "mode": mode,
                "subscription": subscription,
                "payment_intent": payment_intent,
                "amount_total": amount_total,
                "customer": customer,
                "created": 1_700_000_000,
                "livemode": livemode,
                "metadata": {},
            }
        )

    return _create


# =============================================================================
# Mock Stripe Error Fixtures
# =============================================================================


@pytest.fixture
def invalid_request_error():
    """Create a Stripe InvalidRequestError."""

    def _create(
        message: str = "No such checkout.session: 'cs_missing'",
        param: str | None = "id",
        code: str = "resource_missing",
    ) -> stripe.InvalidRequestError:
        return stripe.InvalidRequestError(message, param, code=code)

    return _create


@pytest.fixture
def rate_limit_error():
    return stripe.RateLimitError("Too many requests hit the API too quickly.")


@pytest.fixture
def api_connection_error():
    return stripe.APIConnectionError("Could not connect to Stripe.")


@pytest.fixture
def timeout_error():
    return stripe.APIConnectionError(
        "Request to Stripe timed out after 8 seconds."
    )


@pytest.fixture
def api_error():
    return stripe.APIError("Something went wrong on Stripe's end.")


@pytest.fixture
def authentication_error():
    return stripe.AuthenticationError("Invalid API Key provided.")


# =============================================================================
# Mock Stripe Client Fixtures
# =============================================================================


@pytest.fixture
def mock_stripe_http_client():
    """Mock stripe.RequestsClient so no real HTTP client is built."""
    with patch("stripe.RequestsClient") as mock:
        yield mock


@pytest.fixture
def mock_stripe_session(mock_stripe_http_client):
    """Mock stripe.checkout.Session API."""
    with patch("stripe.checkout.Session") as mock:
        yield mock


@pytest.fixture
def mock_stripe_subscription(mock_stripe_http_client):
    """Mock stripe.Subscription API."""
    with patch("stripe.Subscription") as mock:
        mock.list.return_value = MockStripeList(items=[])
        yield mock


@pytest.fixture
def mock_stripe_payment_intent(mock_stripe_http_client):
    """Mock stripe.PaymentIntent API."""
    with patch("stripe.PaymentIntent") as mock:
        mock.list.return_value = MockStripeList(items=[])
        yield mock
