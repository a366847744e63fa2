"""Tests for structured logging configuration and bound log context."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
import structlog

from ksi.client import KSI
from ksi.core.config import Settings
from ksi.core.errors import NetworkError
from ksi.core.logging import REDACTED, configure_logging, redact_secrets
from tools.fake_gateway import TEST_CREDENTIALS


class _RecordingTransport:
    """Signing transport that records the bound log context, then fails."""

    def __init__(self) -> None:
        self.context: dict[str, Any] = {}

    async def send_signing_request(self, request: bytes) -> bytes:
        self.context = structlog.contextvars.get_contextvars()
        raise NetworkError("aggregator unreachable")

    async def close(self) -> None:
        pass


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


class TestLogging:
    """Tests for secret redaction and context binding."""

    def test_redacts_credentials(self) -> None:
        event = redact_secrets(
            None,
            "info",
            {
                "event": "ksi_request",
                "login_id": "anon",
                "login_key": "secret",
                "response": {"mac": "00ff", "status": 0},
            },
        )
        assert event["login_key"] == REDACTED
        assert event["response"] == {"mac": REDACTED, "status": 0}
        assert event["login_id"] == "anon"

    def test_binds_login_id(self) -> None:
        configure_logging(Settings(_env_file=None, login_id="anon", login_key="anon"))
        assert structlog.contextvars.get_contextvars() == {"ksi_login_id": "anon"}

    def test_without_login_id(self) -> None:
        structlog.contextvars.bind_contextvars(stale="value")
        configure_logging(Settings(_env_file=None))
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.asyncio
    async def test_operation_bound_for_call(self, settings: Settings) -> None:
        transport = _RecordingTransport()
        ksi = KSI(signing_transport=transport, credentials=TEST_CREDENTIALS, settings=settings)

        with pytest.raises(NetworkError):
            await ksi.sign(b"document")

        assert transport.context["ksi_operation"] == "sign"
        assert "ksi_operation" not in structlog.contextvars.get_contextvars()
        await ksi.close()
