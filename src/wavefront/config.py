from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path

from wavefront.defaults import (
    RUN_DEFAULTS,
    SECTIONS,
    TEST_DEFAULTS,
    TEST_POLICIES,
    TIMEOUT_DEFAULTS,
    VALIDATION_DEFAULTS,
    generate_toml,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "wavefront.toml"
CONFIG_DIR = ".wavefront"
STATE_DB_FILENAME = "state.db"


@dataclass
class RunConfig:
    max_retries: int
    fail_fast: bool
    concurrency_cap: int
    force_integration: bool


@dataclass
class TestConfig:
    __test__ = False

    policy: str
    full_parallel_threshold: int
    execution_slots: int

    @property
    def slots(self) -> int:
        """Execution slots for the bounded policy; 0 means one per CPU."""
        return self.execution_slots or os.cpu_count() or 1


@dataclass
class TimeoutConfig:
    build: float
    test: float
    integration: float


@dataclass
class ValidationConfig:
    coupling_threshold: int
    max_capability_groups: int


@dataclass
class WavefrontConfig:
    run: RunConfig = field(default_factory=lambda: RunConfig(**RUN_DEFAULTS))
    test: TestConfig = field(default_factory=lambda: TestConfig(**TEST_DEFAULTS))
    timeouts: TimeoutConfig = field(
        default_factory=lambda: TimeoutConfig(**TIMEOUT_DEFAULTS),
    )
    validation: ValidationConfig = field(
        default_factory=lambda: ValidationConfig(**VALIDATION_DEFAULTS),
    )


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_defaults() -> dict:
    return {name: dict(values) for name, values in SECTIONS.items()}


def _section(data: dict, name: str, defaults: dict) -> dict:
    """Known keys of one section; unknown keys are dropped with a warning."""
    raw = data.get(name, defaults)
    unknown = sorted(set(raw) - set(defaults))
    if unknown:
        logger.warning("Ignoring unknown [%s] keys: %s", name, ", ".join(unknown))
    return {k: raw.get(k, v) for k, v in defaults.items()}


def _config_from_dict(data: dict) -> WavefrontConfig:
    test = _section(data, "test", TEST_DEFAULTS)
    if test["policy"] not in TEST_POLICIES:
        logger.warning(
            "Unknown test policy %r, falling back to %r",
            test["policy"],
            TEST_DEFAULTS["policy"],
        )
        test["policy"] = TEST_DEFAULTS["policy"]
    timeouts = {
        k: float(v) for k, v in _section(data, "timeout", TIMEOUT_DEFAULTS).items()
    }
    return WavefrontConfig(
        run=RunConfig(**_section(data, "run", RUN_DEFAULTS)),
        test=TestConfig(**test),
        timeouts=TimeoutConfig(**timeouts),
        validation=ValidationConfig(
            **_section(data, "validation", VALIDATION_DEFAULTS)
        ),
    )


def load_config(project_root: Path) -> WavefrontConfig:
    """Load config: source defaults merged with .wavefront/wavefront.toml overrides."""
    defaults = _build_defaults()
    toml_path = project_root / CONFIG_DIR / CONFIG_FILENAME

    if not toml_path.is_file():
        return _config_from_dict(defaults)

    try:
        raw = toml_path.read_bytes()
        overrides = tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        logger.warning("Failed to parse %s: %s", toml_path, exc)
        return _config_from_dict(defaults)

    merged = _deep_merge(defaults, overrides)
    return _config_from_dict(merged)


def init_config(project_root: Path) -> Path:
    """Write .wavefront/wavefront.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path


def state_db_path(project_root: Path) -> Path:
    return project_root / CONFIG_DIR / STATE_DB_FILENAME


def with_overrides(
    config: WavefrontConfig,
    *,
    max_retries: int | None = None,
    concurrency_cap: int | None = None,
    fail_fast: bool | None = None,
    force_integration: bool | None = None,
) -> WavefrontConfig:
    """Return a copy of *config* with command-line values applied.

    ``None`` leaves the configured value untouched.
    """
    changes = {
        "max_retries": max_retries,
        "concurrency_cap": concurrency_cap,
        "fail_fast": fail_fast,
        "force_integration": force_integration,
    }
    run = replace(config.run, **{k: v for k, v in changes.items() if v is not None})
    return replace(config, run=run)
