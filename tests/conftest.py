"""Root test configuration for scanrelay.

Clears every SCANRELAY_* environment variable so a developer's shell (or a
CI runner's) cannot leak config overrides into the suite, and provides a
Config tuned for tests: zero backoff, short watchdog, small queues.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

from scanrelay.config import Config, DeliveryConfig, DownstreamConfig, RelayConfig, StoreConfig
from scanrelay.store.protocol import AccessReference


@pytest.fixture(autouse=True)
def clean_scanrelay_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove SCANRELAY_* variables for the duration of each test."""
    for name in list(os.environ):
        if name.startswith("SCANRELAY_"):
            monkeypatch.delenv(name, raising=False)


def make_test_config(**relay_overrides: object) -> Config:
    """Config with no retry delays; relay overrides applied on top."""
    relay = RelayConfig(
        workers=2,
        queue_capacity=8,
        watchdog_timeout_s=5.0,
        fetch_timeout_s=2.0,
        backoff_base_s=0.0,
        backoff_cap_s=0.0,
    )
    for key, value in relay_overrides.items():
        setattr(relay, key, value)
    return Config(
        store=StoreConfig(backoff_base_s=0.0, backoff_cap_s=0.0),
        delivery=DeliveryConfig(
            engagement="42",
            relay_url="http://relay.test",
            backoff_base_s=0.0,
            backoff_cap_s=0.0,
        ),
        relay=relay,
        downstream=DownstreamConfig(url="http://dojo.test", api_token="test-token"),
    )


@pytest.fixture
def test_config() -> Config:
    return make_test_config()


@pytest.fixture
def config_factory():
    """Build a test Config with relay overrides: ``config_factory(workers=1)``."""
    return make_test_config


def make_reference(url: str = "http://artifacts.test/reports/run/gitleaks.json?sig=abc") -> AccessReference:
    return AccessReference(
        store_key="reports/run/gitleaks.json",
        url=url,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def reference_factory():
    return make_reference
