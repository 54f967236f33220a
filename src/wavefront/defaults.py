"""Compiled-in default configuration values for wavefront.

This module is the single source of truth for all default settings.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Final

RUN_DEFAULTS: Final[dict[str, int | bool]] = {
    "max_retries": 3,
    "fail_fast": False,
    "concurrency_cap": 0,
    "force_integration": False,
}

TEST_DEFAULTS: Final[dict[str, int | str]] = {
    "policy": "auto",
    "full_parallel_threshold": 8,
    "execution_slots": 0,
}

TIMEOUT_DEFAULTS: Final[dict[str, float]] = {
    "build": 600.0,
    "test": 300.0,
    "integration": 900.0,
}

VALIDATION_DEFAULTS: Final[dict[str, int]] = {
    "coupling_threshold": 5,
    "max_capability_groups": 1,
}

TEST_POLICIES: Final[tuple[str, ...]] = ("auto", "full", "bounded")


SECTIONS: Final[dict[str, dict]] = {
    "run": RUN_DEFAULTS,
    "test": TEST_DEFAULTS,
    "timeout": TIMEOUT_DEFAULTS,
    "validation": VALIDATION_DEFAULTS,
}

_NOTES: Final[dict[str, str]] = {
    "run": "retries per failing unit, test fail-fast, task cap (0 = uncapped)",
    "test": f"policy is one of {', '.join(TEST_POLICIES)}; 0 slots = one per CPU",
    "timeout": "seconds per task, overridable per unit in the plan",
    "validation": "thresholds for coupling and capability-sprawl warnings",
}


def _toml_scalar(value: object) -> str:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return repr(value)
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    msg = f"Cannot write {type(value).__name__} to TOML"
    raise TypeError(msg)


def generate_toml() -> str:
    """Render every default section as a commented TOML document."""
    blocks = []
    for name, values in SECTIONS.items():
        body = "\n".join(f"{key} = {_toml_scalar(value)}" for key, value in values.items())
        blocks.append(f"# {_NOTES[name]}\n[{name}]\n{body}")
    return "\n\n".join(blocks) + "\n"
