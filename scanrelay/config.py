"""Config loading for scanrelay.

Reads `.scanrelay/config.yaml` (or `~/.scanrelay/config.yaml`).
Raises SystemExit on parse errors, missing `version` field or invalid values.
If no config file is found, returns default values (safe to run the relay
without config; a pipeline run needs at least one stage).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. SCANRELAY_CONFIG environment variable (if set)
  3. `.scanrelay/config.yaml` (working directory — CI checkouts)
  4. `~/.scanrelay/config.yaml` (home directory — relay deployments)

Environment variable overrides:
  SCANRELAY_RELAY_PORT        — overrides relay.port
  SCANRELAY_DOWNSTREAM_TOKEN  — overrides downstream.api_token
  SCANRELAY_STORE_SECRET_KEY  — overrides store.secret_key (s3) / store.signing_key (local)

Example::

    version: 1
    pipeline:
      stages:
        - name: gitleaks
          policy: non_blocking
          command: [gitleaks, detect, --report-path, gitleaks-report.json]
          reports:
            - {kind: SECRET_SCAN, path: gitleaks-report.json}
        - name: quality-gate
          policy: time_boxed
          timeout_s: 300
          command: [./scripts/sonar-quality-gate.sh]
    store:
      backend: s3
      bucket: scan-reports
    delivery:
      mode: relayed
      engagement: "42"
      relay_url: http://scan-relay:8080
"""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from scanrelay.constants import (
    DEFAULT_ACCESS_TTL_S,
    DISPATCH_BACKOFF_BASE_S,
    DISPATCH_BACKOFF_CAP_S,
    DISPATCH_MAX_ATTEMPTS,
    DISPATCH_TIMEOUT_S,
    DOWNSTREAM_IMPORT_PATH,
    DOWNSTREAM_TIMEOUT_S,
    RELAY_BACKOFF_BASE_S,
    RELAY_BACKOFF_CAP_S,
    RELAY_FETCH_MAX_ATTEMPTS,
    RELAY_FETCH_TIMEOUT_S,
    RELAY_IMPORT_MAX_ATTEMPTS,
    RELAY_MAX_ARTIFACT_BYTES,
    RELAY_QUEUE_CAPACITY,
    RELAY_WATCHDOG_TIMEOUT_S,
    RELAY_WORKERS,
    RESULT_STORE_MAX_RECORDS,
    STORE_BACKOFF_BASE_S,
    STORE_BACKOFF_CAP_S,
    STORE_PUT_MAX_ATTEMPTS,
)
from scanrelay.errors import ConfigError
from scanrelay.pipeline.actions import ReportSpec
from scanrelay.pipeline.models import GatingPolicy, ReportKind
from scanrelay.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1
SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_STORE_BACKENDS: frozenset[str] = frozenset({"s3", "local"})
VALID_DELIVERY_MODES: frozenset[str] = frozenset({"relayed", "direct"})
VALID_DOWNSTREAM_MODES: frozenset[str] = frozenset({"multipart", "reference"})

DEFAULT_CONFIG_PATHS = [
    ".scanrelay/config.yaml",
    os.path.expanduser("~/.scanrelay/config.yaml"),
]

# DefectDojo parser names for the four report kinds.
DEFAULT_SCAN_TYPES: dict[str, str] = {
    ReportKind.SECRET_SCAN.value: "Gitleaks Scan",
    ReportKind.DEPENDENCY_SCAN.value: "Dependency Check Scan",
    ReportKind.IMAGE_SCAN.value: "Trivy Scan",
    ReportKind.DYNAMIC_SCAN.value: "ZAP Scan",
}


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class StageConfig:
    """One stage definition from `pipeline.stages`."""

    name: str
    policy: GatingPolicy
    command: list[str]
    timeout_s: Optional[float] = None
    cwd: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    reports: list[ReportSpec] = field(default_factory=list)
    ok_exit_codes: list[int] = field(default_factory=lambda: [0])


@dataclass
class PipelineConfig:
    stages: list[StageConfig] = field(default_factory=list)
    deliver_on_abort: bool = True  # deliver reports produced before an abort
    workdir: Optional[str] = None


@dataclass
class StoreConfig:
    """Artifact store configuration.

    backend: "s3" | "local"
    ttl_s:   lifetime of minted access references; must exceed relay.watchdog_timeout_s
    """

    backend: str = "s3"
    bucket: str = "scan-reports"
    prefix: str = "reports"
    endpoint: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    force_path_style: bool = False
    root: str = "~/.scanrelay/artifacts"
    public_base_url: str = ""
    signing_key: str = ""
    ttl_s: int = DEFAULT_ACCESS_TTL_S
    max_attempts: int = STORE_PUT_MAX_ATTEMPTS
    backoff_base_s: float = STORE_BACKOFF_BASE_S
    backoff_cap_s: float = STORE_BACKOFF_CAP_S


@dataclass
class DeliveryConfig:
    """Delivery Job Dispatcher configuration.

    mode: "relayed" (store + relay) | "direct" (synchronous upload to downstream)
    """

    enabled: bool = True
    mode: str = "relayed"
    engagement: str = ""
    relay_url: str = "http://127.0.0.1:8080"
    max_attempts: int = DISPATCH_MAX_ATTEMPTS
    backoff_base_s: float = DISPATCH_BACKOFF_BASE_S
    backoff_cap_s: float = DISPATCH_BACKOFF_CAP_S
    timeout_s: float = DISPATCH_TIMEOUT_S
    scan_types: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SCAN_TYPES))

    def scan_type_for(self, kind: ReportKind) -> str:
        return self.scan_types.get(kind.value, DEFAULT_SCAN_TYPES[kind.value])


@dataclass
class RelayConfig:
    """Relay Service configuration (bounded pool + bounded queue)."""

    host: str = "127.0.0.1"
    port: int = 8080
    workers: int = RELAY_WORKERS
    queue_capacity: int = RELAY_QUEUE_CAPACITY
    watchdog_timeout_s: float = RELAY_WATCHDOG_TIMEOUT_S
    fetch_timeout_s: float = RELAY_FETCH_TIMEOUT_S
    max_artifact_bytes: int = RELAY_MAX_ARTIFACT_BYTES
    fetch_max_attempts: int = RELAY_FETCH_MAX_ATTEMPTS
    import_max_attempts: int = RELAY_IMPORT_MAX_ATTEMPTS
    backoff_base_s: float = RELAY_BACKOFF_BASE_S
    backoff_cap_s: float = RELAY_BACKOFF_CAP_S
    results_path: Optional[str] = None  # None → in-memory result store
    max_records: int = RESULT_STORE_MAX_RECORDS


@dataclass
class DownstreamConfig:
    """Vulnerability-management import API (DefectDojo-shaped by default).

    mode: "multipart" (upload file bytes) | "reference" (send file_url)
    """

    url: str = ""
    api_token: str = ""
    mode: str = "multipart"
    import_path: str = DOWNSTREAM_IMPORT_PATH
    timeout_s: float = DOWNSTREAM_TIMEOUT_S
    extra_fields: dict[str, str] = field(default_factory=dict)


@dataclass
class Config:
    """Root configuration object populated from .scanrelay/config.yaml.

    All fields have safe defaults.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    downstream: DownstreamConfig = field(default_factory=DownstreamConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.

        Raises:
            ConfigError: On any invalid value. load_config() turns this into SystemExit(1).
        """
        config = cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            pipeline=_parse_pipeline(_section(raw, "pipeline")),
            store=_parse_store(_section(raw, "store")),
            delivery=_parse_delivery(_section(raw, "delivery")),
            relay=_parse_relay(_section(raw, "relay")),
            downstream=_parse_downstream(_section(raw, "downstream")),
            path=path,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Cross-section checks.

        Raises:
            ConfigError: access references would expire before the relay's
                         watchdog gives up on a job.
        """
        check_access_ttl(self.store.ttl_s, self.relay.watchdog_timeout_s)


def check_access_ttl(ttl_s: float, watchdog_timeout_s: float) -> None:
    """Reject an access-reference TTL that does not outlive the relay watchdog.

    A job can legitimately spend up to the watchdog bound in the relay's
    queue and workers; a reference that expires sooner turns a slow import
    into a spurious FETCH_FAILED.
    """
    if ttl_s <= watchdog_timeout_s:
        raise ConfigError(
            f"store.ttl_s ({ttl_s}s) must exceed relay.watchdog_timeout_s "
            f"({watchdog_timeout_s}s)"
        )


# ─── Section parsers ──────────────────────────────────────────────────────────


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _choice(value: Any, valid: frozenset[str], key: str) -> str:
    normalized = str(value).strip().lower()
    if normalized not in valid:
        raise ConfigError(f"invalid {key}: '{value}'. Supported values: {sorted(valid)}.")
    return normalized


def _positive(value: Any, key: str, *, allow_zero: bool = False) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}") from None
    if number < 0 or (number == 0 and not allow_zero):
        raise ConfigError(f"{key} must be {'>= 0' if allow_zero else '> 0'}, got {value!r}")
    return number


def _str_map(value: Any, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _parse_stage(raw: Any, index: int) -> StageConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"pipeline.stages[{index}] must be a mapping")
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ConfigError(f"pipeline.stages[{index}] is missing 'name'")

    policy = GatingPolicy.parse(raw.get("policy", "blocking"))

    timeout_raw = raw.get("timeout_s")
    timeout_s = None if timeout_raw is None else _positive(timeout_raw, f"stage {name!r} timeout_s")
    if policy is GatingPolicy.TIME_BOXED and timeout_s is None:
        raise ConfigError(f"stage {name!r}: policy time_boxed requires timeout_s")
    if policy is not GatingPolicy.TIME_BOXED and timeout_s is not None:
        raise ConfigError(f"stage {name!r}: timeout_s is only valid with policy time_boxed")

    command_raw = raw.get("command")
    if isinstance(command_raw, str):
        command = shlex.split(command_raw)
    elif isinstance(command_raw, list):
        command = [str(part) for part in command_raw]
    else:
        command = []
    if not command:
        raise ConfigError(f"stage {name!r} is missing 'command'")

    reports: list[ReportSpec] = []
    for report_raw in raw.get("reports") or []:
        if not isinstance(report_raw, dict) or not report_raw.get("path"):
            raise ConfigError(f"stage {name!r}: each report needs 'kind' and 'path'")
        reports.append(
            ReportSpec(
                kind=ReportKind.parse(report_raw.get("kind", "")),
                path=str(report_raw["path"]),
                format=str(report_raw.get("format", "")),
            )
        )

    ok_codes = raw.get("ok_exit_codes", [0])
    if not isinstance(ok_codes, list) or not all(isinstance(c, int) for c in ok_codes):
        raise ConfigError(f"stage {name!r}: ok_exit_codes must be a list of integers")

    return StageConfig(
        name=name,
        policy=policy,
        command=command,
        timeout_s=timeout_s,
        cwd=raw.get("cwd"),
        env=_str_map(raw.get("env"), f"stage {name!r} env"),
        reports=reports,
        ok_exit_codes=ok_codes,
    )


def _parse_pipeline(raw: dict) -> PipelineConfig:
    stages_raw = raw.get("stages") or []
    if not isinstance(stages_raw, list):
        raise ConfigError("pipeline.stages must be a list")
    stages = [_parse_stage(s, i) for i, s in enumerate(stages_raw)]

    names = [s.name for s in stages]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"duplicate stage names: {duplicates}")

    produced = [spec.kind for s in stages for spec in s.reports]
    repeated = sorted({k.value for k in produced if produced.count(k) > 1})
    if repeated:
        raise ConfigError(f"report kinds declared by more than one stage: {repeated}")

    return PipelineConfig(
        stages=stages,
        deliver_on_abort=bool(raw.get("deliver_on_abort", True)),
        workdir=raw.get("workdir"),
    )


def _parse_store(raw: dict) -> StoreConfig:
    d = StoreConfig()
    return StoreConfig(
        backend=_choice(raw.get("backend", d.backend), VALID_STORE_BACKENDS, "store.backend"),
        bucket=str(raw.get("bucket", d.bucket)),
        prefix=str(raw.get("prefix", d.prefix)),
        endpoint=str(raw.get("endpoint", d.endpoint)),
        region=str(raw.get("region", d.region)),
        access_key=str(raw.get("access_key", d.access_key)),
        secret_key=str(raw.get("secret_key", d.secret_key)),
        force_path_style=bool(raw.get("force_path_style", d.force_path_style)),
        root=str(raw.get("root", d.root)),
        public_base_url=str(raw.get("public_base_url", d.public_base_url)),
        signing_key=str(raw.get("signing_key", d.signing_key)),
        ttl_s=int(_positive(raw.get("ttl_s", d.ttl_s), "store.ttl_s")),
        max_attempts=int(_positive(raw.get("max_attempts", d.max_attempts), "store.max_attempts")),
        backoff_base_s=_positive(raw.get("backoff_base_s", d.backoff_base_s), "store.backoff_base_s", allow_zero=True),
        backoff_cap_s=_positive(raw.get("backoff_cap_s", d.backoff_cap_s), "store.backoff_cap_s", allow_zero=True),
    )


def _parse_delivery(raw: dict) -> DeliveryConfig:
    d = DeliveryConfig()
    scan_types = dict(DEFAULT_SCAN_TYPES)
    for kind, scan_type in _str_map(raw.get("scan_types"), "delivery.scan_types").items():
        scan_types[ReportKind.parse(kind).value] = scan_type
    return DeliveryConfig(
        enabled=bool(raw.get("enabled", d.enabled)),
        mode=_choice(raw.get("mode", d.mode), VALID_DELIVERY_MODES, "delivery.mode"),
        engagement=str(raw.get("engagement", d.engagement)),
        relay_url=str(raw.get("relay_url", d.relay_url)).rstrip("/"),
        max_attempts=int(_positive(raw.get("max_attempts", d.max_attempts), "delivery.max_attempts")),
        backoff_base_s=_positive(raw.get("backoff_base_s", d.backoff_base_s), "delivery.backoff_base_s", allow_zero=True),
        backoff_cap_s=_positive(raw.get("backoff_cap_s", d.backoff_cap_s), "delivery.backoff_cap_s", allow_zero=True),
        timeout_s=_positive(raw.get("timeout_s", d.timeout_s), "delivery.timeout_s"),
        scan_types=scan_types,
    )


def _parse_relay(raw: dict) -> RelayConfig:
    d = RelayConfig()
    results_path = raw.get("results_path", d.results_path)
    return RelayConfig(
        host=str(raw.get("host", d.host)),
        port=int(raw.get("port", d.port)),
        workers=int(_positive(raw.get("workers", d.workers), "relay.workers")),
        queue_capacity=int(_positive(raw.get("queue_capacity", d.queue_capacity), "relay.queue_capacity")),
        watchdog_timeout_s=_positive(raw.get("watchdog_timeout_s", d.watchdog_timeout_s), "relay.watchdog_timeout_s"),
        fetch_timeout_s=_positive(raw.get("fetch_timeout_s", d.fetch_timeout_s), "relay.fetch_timeout_s"),
        max_artifact_bytes=int(_positive(raw.get("max_artifact_bytes", d.max_artifact_bytes), "relay.max_artifact_bytes")),
        fetch_max_attempts=int(_positive(raw.get("fetch_max_attempts", d.fetch_max_attempts), "relay.fetch_max_attempts")),
        import_max_attempts=int(_positive(raw.get("import_max_attempts", d.import_max_attempts), "relay.import_max_attempts")),
        backoff_base_s=_positive(raw.get("backoff_base_s", d.backoff_base_s), "relay.backoff_base_s", allow_zero=True),
        backoff_cap_s=_positive(raw.get("backoff_cap_s", d.backoff_cap_s), "relay.backoff_cap_s", allow_zero=True),
        results_path=str(results_path) if results_path else None,
        max_records=int(_positive(raw.get("max_records", d.max_records), "relay.max_records")),
    )


def _parse_downstream(raw: dict) -> DownstreamConfig:
    d = DownstreamConfig()
    return DownstreamConfig(
        url=str(raw.get("url", d.url)).rstrip("/"),
        api_token=str(raw.get("api_token", d.api_token)),
        mode=_choice(raw.get("mode", d.mode), VALID_DOWNSTREAM_MODES, "downstream.mode"),
        import_path=str(raw.get("import_path", d.import_path)),
        timeout_s=_positive(raw.get("timeout_s", d.timeout_s), "downstream.timeout_s"),
        extra_fields=_str_map(raw.get("extra_fields"), "downstream.extra_fields"),
    )


# ─── Config loading ───────────────────────────────────────────────────────────


def _fail(msg: str) -> None:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate scanrelay configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, or any CONFIG_ERROR raised while parsing sections.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("SCANRELAY_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    try:
        config = Config.from_dict(raw, path=found_path)
        _apply_env_overrides(config)
    except ConfigError as exc:
        _fail(f"CONFIG ERROR: {found_path}: {exc.message}")

    if config.relay.host == "0.0.0.0":
        logger.warning(
            "Relay is configured to bind on 0.0.0.0 (all interfaces). "
            "Intake has no authentication; restrict access at the network layer."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        stages=len(config.pipeline.stages),
        delivery_mode=config.delivery.mode,
        store_backend=config.store.backend,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If SCANRELAY_RELAY_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("SCANRELAY_RELAY_PORT")
    if env_port is not None:
        try:
            config.relay.port = int(env_port)
        except ValueError:
            _fail(
                "CONFIG ERROR: SCANRELAY_RELAY_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    env_token = os.environ.get("SCANRELAY_DOWNSTREAM_TOKEN")
    if env_token:
        config.downstream.api_token = env_token

    env_secret = os.environ.get("SCANRELAY_STORE_SECRET_KEY")
    if env_secret:
        if config.store.backend == "local":
            config.store.signing_key = env_secret
        else:
            config.store.secret_key = env_secret
