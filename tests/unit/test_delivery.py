"""Unit tests for ReportDelivery: per-report isolation and fatal escalation."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest

from scanrelay.config import Config, DeliveryConfig, DownstreamConfig, StoreConfig
from scanrelay.dispatch.dispatcher import Dispatcher
from scanrelay.dispatch.models import DeliveryMode
from scanrelay.downstream.importer import DownstreamImporter
from scanrelay.errors import ConfigError, KeyExists, KeyNotFound, StorageUnavailable
from scanrelay.pipeline.delivery import DeliveryStatus, ReportDelivery
from scanrelay.pipeline.models import (
    GatingPolicy,
    Report,
    ReportKind,
    RunOutcome,
    RunStatus,
    StageResult,
    StageStatus,
)
from scanrelay.store.protocol import AccessReference


class FakeStore:
    """In-memory ArtifactStore; ``unavailable`` names fail on put."""

    backend_name = "fake"

    def __init__(self, unavailable: tuple[str, ...] = ()) -> None:
        self.objects: dict[str, bytes] = {}
        self.unavailable = unavailable
        self.closed = False

    async def put(self, name: str, data: bytes) -> str:
        if any(marker in name for marker in self.unavailable):
            raise StorageUnavailable(f"store down for {name}", attempts=3)
        if name in self.objects:
            raise KeyExists(name)
        self.objects[name] = data
        return name

    async def sign(self, store_key: str, ttl_s: int) -> AccessReference:
        if store_key not in self.objects:
            raise KeyNotFound(store_key)
        return AccessReference(
            store_key=store_key,
            url=f"https://store.test/{store_key}?sig=x",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_s),
        )

    async def close(self) -> None:
        self.closed = True


class BrokenSignStore(FakeStore):
    """FakeStore whose ``sign`` fails with a non-taxonomy error for ``broken`` names."""

    def __init__(self, broken: tuple[str, ...]) -> None:
        super().__init__()
        self.broken = broken

    async def sign(self, store_key: str, ttl_s: int) -> AccessReference:
        if any(marker in store_key for marker in self.broken):
            raise RuntimeError("signer crashed")
        return await super().sign(store_key, ttl_s)


def _report(kind: ReportKind, stage: str, payload: bytes = b"{}") -> Report:
    return Report(kind=kind, format="json", payload=payload, stage=stage)


def _delivery(store: Optional[FakeStore], handler, mode: DeliveryMode = DeliveryMode.RELAYED) -> ReportDelivery:
    dispatcher = Dispatcher(
        mode,
        relay_url="http://relay.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        max_attempts=2,
        backoff_base_s=0,
        backoff_cap_s=0,
    )
    return ReportDelivery(
        dispatcher=dispatcher,
        store=store,
        engagement="42",
        scan_type_for=DeliveryConfig().scan_type_for,
        ttl_s=3600,
    )


def _accept(request: httpx.Request) -> httpx.Response:
    return httpx.Response(202, json={"job_id": "J-" + json.loads(request.content)["scan_type"]})


class TestConstruction:
    def test_relayed_requires_store(self) -> None:
        with pytest.raises(ValueError):
            _delivery(None, _accept)

    def test_ttl_must_exceed_watchdog(self) -> None:
        dispatcher = Dispatcher(DeliveryMode.RELAYED, relay_url="http://relay.test")
        with pytest.raises(ConfigError):
            ReportDelivery(
                dispatcher=dispatcher,
                store=FakeStore(),
                engagement="42",
                scan_type_for=DeliveryConfig().scan_type_for,
                ttl_s=60,
                watchdog_timeout_s=600,
            )


class TestDeliverReports:
    @pytest.mark.asyncio
    async def test_every_report_stored_signed_and_dispatched(self) -> None:
        store = FakeStore()
        jobs: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            jobs.append(json.loads(request.content))
            return _accept(request)

        delivery = _delivery(store, handler)
        summary = await delivery.deliver_reports(
            "01RUN",
            [_report(ReportKind.SECRET_SCAN, "gitleaks"), _report(ReportKind.IMAGE_SCAN, "trivy")],
        )

        assert sorted(store.objects) == ["01RUN/image_scan.json", "01RUN/secret_scan.json"]
        assert summary.status_of(ReportKind.SECRET_SCAN) is DeliveryStatus.DELIVERED
        assert summary.status_of(ReportKind.IMAGE_SCAN) is DeliveryStatus.DELIVERED
        assert summary.entries[ReportKind.IMAGE_SCAN].ack.relay_job_id == "J-Trivy Scan"
        assert {j["scan_type"] for j in jobs} == {"Gitleaks Scan", "Trivy Scan"}
        assert all(j["engagement"] == "42" for j in jobs)
        assert not summary.fatal

    @pytest.mark.asyncio
    async def test_missing_kinds_reported_as_not_produced(self) -> None:
        summary = await _delivery(FakeStore(), _accept).deliver_reports(
            "01RUN", [_report(ReportKind.DYNAMIC_SCAN, "zap")]
        )
        assert set(summary.entries) == set(ReportKind)
        assert summary.status_of(ReportKind.SECRET_SCAN) is DeliveryStatus.NOT_PRODUCED
        assert summary.status_of(ReportKind.DEPENDENCY_SCAN) is DeliveryStatus.NOT_PRODUCED
        assert summary.delivered == [ReportKind.DYNAMIC_SCAN]

    @pytest.mark.asyncio
    async def test_storage_failure_isolated_to_one_report(self) -> None:
        store = FakeStore(unavailable=("dependency_scan",))
        summary = await _delivery(store, _accept).deliver_reports(
            "01RUN",
            [
                _report(ReportKind.SECRET_SCAN, "gitleaks"),
                _report(ReportKind.DEPENDENCY_SCAN, "dependency-check"),
            ],
            policy_for=lambda stage: GatingPolicy.NON_BLOCKING,
        )
        assert summary.status_of(ReportKind.SECRET_SCAN) is DeliveryStatus.DELIVERED
        entry = summary.entries[ReportKind.DEPENDENCY_SCAN]
        assert entry.status is DeliveryStatus.STORAGE_UNAVAILABLE
        assert entry.fatal is False
        assert not summary.fatal

    @pytest.mark.asyncio
    async def test_storage_failure_from_blocking_stage_is_fatal(self) -> None:
        store = FakeStore(unavailable=("image_scan",))
        summary = await _delivery(store, _accept).deliver_reports(
            "01RUN",
            [_report(ReportKind.IMAGE_SCAN, "trivy")],
            policy_for=lambda stage: GatingPolicy.BLOCKING,
        )
        assert summary.entries[ReportKind.IMAGE_SCAN].fatal is True
        assert summary.fatal
        assert summary.to_dict()["fatal"] is True

    @pytest.mark.asyncio
    async def test_undelivered_dispatch_is_not_fatal(self) -> None:
        summary = await _delivery(FakeStore(), lambda r: httpx.Response(400)).deliver_reports(
            "01RUN", [_report(ReportKind.SECRET_SCAN, "gitleaks")]
        )
        entry = summary.entries[ReportKind.SECRET_SCAN]
        assert entry.status is DeliveryStatus.UNDELIVERED
        assert entry.store_key == "01RUN/secret_scan.json"
        assert entry.ack is not None and entry.ack.attempts == 1
        assert not summary.fatal

    @pytest.mark.asyncio
    async def test_unexpected_store_error_isolated_to_one_report(self) -> None:
        store = BrokenSignStore(broken=("dependency_scan",))
        summary = await _delivery(store, _accept).deliver_reports(
            "01RUN",
            [
                _report(ReportKind.SECRET_SCAN, "gitleaks"),
                _report(ReportKind.DEPENDENCY_SCAN, "dependency-check"),
                _report(ReportKind.IMAGE_SCAN, "trivy"),
                _report(ReportKind.DYNAMIC_SCAN, "zap"),
            ],
        )

        entry = summary.entries[ReportKind.DEPENDENCY_SCAN]
        assert entry.status is DeliveryStatus.UNDELIVERED
        assert "signer crashed" in entry.error
        assert entry.fatal is False
        assert summary.delivered == [
            ReportKind.SECRET_SCAN,
            ReportKind.IMAGE_SCAN,
            ReportKind.DYNAMIC_SCAN,
        ]
        assert not summary.fatal

    @pytest.mark.asyncio
    async def test_key_exists_is_undelivered(self) -> None:
        store = FakeStore()
        store.objects["01RUN/secret_scan.json"] = b"older"
        summary = await _delivery(store, _accept).deliver_reports(
            "01RUN", [_report(ReportKind.SECRET_SCAN, "gitleaks")]
        )
        entry = summary.entries[ReportKind.SECRET_SCAN]
        assert entry.status is DeliveryStatus.UNDELIVERED
        assert "KEY_EXISTS" in entry.error
        assert store.objects["01RUN/secret_scan.json"] == b"older"


class TestDeliverOutcome:
    @pytest.mark.asyncio
    async def test_policy_taken_from_producing_stage(self) -> None:
        outcome = RunOutcome(
            run_id="01RUN",
            status=RunStatus.SUCCEEDED,
            results=[
                StageResult("gitleaks", GatingPolicy.NON_BLOCKING, StageStatus.PASSED, 0.1),
                StageResult("quality-gate", GatingPolicy.TIME_BOXED, StageStatus.PASSED, 0.1),
            ],
            reports={
                ReportKind.SECRET_SCAN: _report(ReportKind.SECRET_SCAN, "gitleaks"),
                ReportKind.DEPENDENCY_SCAN: _report(ReportKind.DEPENDENCY_SCAN, "quality-gate"),
            },
        )
        store = FakeStore(unavailable=("secret_scan", "dependency_scan"))
        summary = await _delivery(store, _accept).deliver(outcome)

        assert summary.entries[ReportKind.SECRET_SCAN].fatal is False
        assert summary.entries[ReportKind.DEPENDENCY_SCAN].fatal is True

    @pytest.mark.asyncio
    async def test_close_closes_store(self) -> None:
        store = FakeStore()
        delivery = _delivery(store, _accept)
        await delivery.close()
        assert store.closed


class TestFromConfig:
    @staticmethod
    def _direct_reference_config(config: Config, root: str) -> Config:
        config.delivery.mode = "direct"
        config.downstream.mode = "reference"
        config.store = StoreConfig(
            backend="local",
            root=root,
            public_base_url="https://artifacts.test/artifacts",
            signing_key="nginx-secret",
            backoff_base_s=0.0,
            backoff_cap_s=0.0,
        )
        return config

    def test_direct_reference_mode_requires_store(self) -> None:
        config = DownstreamConfig(url="http://dojo.test", mode="reference")
        dispatcher = Dispatcher(DeliveryMode.DIRECT, importer=DownstreamImporter(config))
        with pytest.raises(ValueError):
            ReportDelivery(
                dispatcher=dispatcher,
                store=None,
                engagement="42",
                scan_type_for=DeliveryConfig().scan_type_for,
                ttl_s=3600,
            )

    @pytest.mark.asyncio
    async def test_direct_reference_mode_imports_by_url(
        self, test_config: Config, tmp_path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        imports: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            imports.append(json.loads(request.content))
            return httpx.Response(201, json={"test": 1})

        monkeypatch.setattr(
            "scanrelay.downstream.importer.create_downstream_client",
            lambda cfg: httpx.AsyncClient(base_url=cfg.url, transport=httpx.MockTransport(handler)),
        )
        config = self._direct_reference_config(test_config, str(tmp_path))
        delivery = ReportDelivery.from_config(config)
        try:
            summary = await delivery.deliver_reports(
                "01RUN",
                [_report(ReportKind.SECRET_SCAN, "gitleaks"), _report(ReportKind.IMAGE_SCAN, "trivy")],
            )
        finally:
            await delivery.close()

        assert summary.delivered == [ReportKind.SECRET_SCAN, ReportKind.IMAGE_SCAN]
        assert summary.entries[ReportKind.SECRET_SCAN].store_key is not None
        assert len(imports) == 2
        for body in imports:
            assert body["file_url"].startswith("https://artifacts.test/artifacts/")
            assert "md5=" in body["file_url"]
            assert body["engagement"] == "42"
        assert sorted(p.name for p in tmp_path.rglob("*.json")) == ["image_scan.json", "secret_scan.json"]
