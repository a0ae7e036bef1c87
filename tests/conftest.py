"""
Pytest configuration and core fixtures.

Provides an isolated environment (test settings, temporary log directory)
and fixtures for storage, the in-memory processor and the payment service.
All fixtures are function-scoped for complete test isolation.
"""

import json
import os
import tempfile
from typing import Any, Callable

import httpx
import pytest


def pytest_configure(config):
    """Configure pytest with custom settings."""
    os.environ["ENVIRONMENT"] = "test"
    os.environ["DEBUG"] = "true"
    os.environ["SENTRY_DSN"] = ""
    os.environ["PAYMENT_PROCESSOR"] = "fake"
    os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="paybridge-logs-"))


def json_response(
    status_code: int = 200, body: Any = None, headers: dict[str, str] | None = None
) -> httpx.Response:
    """Build an httpx response with a JSON body."""
    return httpx.Response(
        status_code,
        content=json.dumps(body if body is not None else {}).encode(),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


class RecordingTransport(httpx.MockTransport):
    """MockTransport that records every request it serves."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


@pytest.fixture
def memory_storage():
    from paybridge.core.services.storage import MemoryStorage

    return MemoryStorage()


@pytest.fixture
def fake_processor():
    """Fake processor without delays or failures."""
    from paybridge.core.services.payment.fake.main import FakeProcessor

    return FakeProcessor(simulate_delays=False, webhook_secret="whsec_fake")


@pytest.fixture
def payment_service(fake_processor, memory_storage):
    from paybridge.core.services.payment_service import PaymentService

    return PaymentService(fake_processor, memory_storage)
