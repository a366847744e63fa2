"""
Pytest fixtures for KSI client testing.
Provides a throwaway PKI, in-process aggregator/extender/publications services
and clients wired to them through httpx.MockTransport.
"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization

from ksi.client import KSI
from ksi.core.config import Settings, get_settings
from tools.fake_gateway import (
    AGGREGATOR_URL,
    EXTENDER_URL,
    PUBLICATIONS_FILE_URL,
    FakeKSIService,
    FakePKI,
    build_pki,
)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep KSI_* variables from the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("KSI_"):
            monkeypatch.delenv(name)
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def pki() -> FakePKI:
    return build_pki()


@pytest.fixture
def trust_store_file(pki: FakePKI, tmp_path: Path) -> Path:
    path = tmp_path / "trust.pem"
    path.write_bytes(pki.ca_certificate.public_bytes(serialization.Encoding.PEM))
    return path


@pytest.fixture
def service(pki: FakePKI) -> FakeKSIService:
    return FakeKSIService(pki)


@pytest.fixture
def settings(trust_store_file: Path) -> Settings:
    return Settings(
        _env_file=None,
        aggregator_url=AGGREGATOR_URL,
        extender_url=EXTENDER_URL,
        publications_file_url=PUBLICATIONS_FILE_URL,
        login_id="anon",
        login_key="anon",
        publications_file_trust_store=trust_store_file,
        retry_backoff=0,
    )


@pytest_asyncio.fixture
async def ksi(settings: Settings, service: FakeKSIService) -> AsyncGenerator[KSI, None]:
    """KSI client talking to the fake services."""
    http_client = service.http_client()
    client = KSI.from_settings(settings, http_client=http_client)
    try:
        yield client
    finally:
        await client.close()
        await http_client.aclose()
