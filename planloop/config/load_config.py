from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


_ALLOWED_STRICTNESS = {"minimal", "standard", "strict"}


def _as_int(value: Any, *, key: str, min_v: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        out = int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e
    if min_v is not None and out < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {out}")
    return out


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_choice(value: Any, *, key: str, allowed: set[str]) -> str:
    s = _as_str(value, key=key).strip().lower()
    if s not in allowed:
        raise ConfigError(f"Invalid {key}: expected one of {sorted(allowed)}, got {s!r}")
    return s


@dataclass(frozen=True)
class ExecutionConfig:
    max_retries: int
    autonomous_mode: bool
    enforce_dependencies: bool


@dataclass(frozen=True)
class VerificationConfig:
    auto_verification_enabled: bool
    strictness: str


@dataclass(frozen=True)
class RetryDelaysConfig:
    """Per-category recovery delays (milliseconds)."""

    invalid_parameter_ms: int
    element_not_found_ms: int
    type_not_available_ms: int
    transaction_failed_ms: int
    timeout_ms: int

    def delay_s(self, category: str) -> float:
        ms = {
            "invalid_parameter": self.invalid_parameter_ms,
            "element_not_found": self.element_not_found_ms,
            "type_not_available": self.type_not_available_ms,
            "transaction_failed": self.transaction_failed_ms,
            "timeout": self.timeout_ms,
        }.get(category, 0)
        return ms / 1000.0


@dataclass(frozen=True)
class JournalConfig:
    enabled: bool


@dataclass(frozen=True)
class PromptConfig:
    verification_directive_template: str
    minimal_instruction: str
    standard_instruction: str
    strict_instruction: str

    def instruction_for(self, strictness: str) -> str:
        if strictness == "minimal":
            return self.minimal_instruction
        if strictness == "strict":
            return self.strict_instruction
        return self.standard_instruction


@dataclass(frozen=True)
class AppConfig:
    execution: ExecutionConfig
    verification: VerificationConfig
    retry_delays: RetryDelaysConfig
    journal: JournalConfig
    prompts: PromptConfig


_DEFAULT_DIRECTIVE_TEMPLATE = (
    "[AUTO-VERIFICATION] Step {{step_number}} ({{step_description}}) just ran state-changing tools.\n"
    "Tools executed: {{tools}}\n"
    "Affected elements: {{affected}}\n"
    "{{instruction}}\n"
    "Invoke a check capability now and report your assessment: approved=true if the outcome "
    "matches the step's success criteria ({{success_criteria}}), otherwise list the issues found."
)

_DEFAULTS: dict[str, dict[str, Any]] = {
    "execution": {
        "max_retries": 2,
        "autonomous_mode": True,
        "enforce_dependencies": True,
    },
    "verification": {
        "auto_verification_enabled": True,
        "strictness": "standard",
    },
    "retry_delays_ms": {
        "invalid_parameter": 0,
        "element_not_found": 500,
        "type_not_available": 0,
        "transaction_failed": 1000,
        "timeout": 2000,
    },
    "journal": {
        "enabled": True,
    },
    "prompts": {
        "verification_directive_template": _DEFAULT_DIRECTIVE_TEMPLATE,
        "minimal_instruction": "Check only that the expected elements exist.",
        "standard_instruction": "Check that the expected elements exist and sit where the step intended.",
        "strict_instruction": (
            "Check existence, placement, types and parameter values of every affected element, "
            "and flag any warning introduced by this step."
        ),
    },
}


def default_config_path() -> Path:
    return Path(os.getenv("PLANLOOP_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid section [{name}]: expected a table")
    merged = dict(_DEFAULTS[name])
    merged.update(value)
    return merged


def _build_config(raw: dict[str, Any]) -> AppConfig:
    execution = _section(raw, "execution")
    verification = _section(raw, "verification")
    delays = _section(raw, "retry_delays_ms")
    journal = _section(raw, "journal")
    prompts = _section(raw, "prompts")

    max_retries_env = os.getenv("PLANLOOP_MAX_RETRIES", "").strip()
    if max_retries_env:
        execution["max_retries"] = max_retries_env

    return AppConfig(
        execution=ExecutionConfig(
            max_retries=_as_int(execution.get("max_retries"), key="execution.max_retries", min_v=0),
            autonomous_mode=_as_bool(execution.get("autonomous_mode"), key="execution.autonomous_mode"),
            enforce_dependencies=_as_bool(
                execution.get("enforce_dependencies"), key="execution.enforce_dependencies"
            ),
        ),
        verification=VerificationConfig(
            auto_verification_enabled=_as_bool(
                verification.get("auto_verification_enabled"),
                key="verification.auto_verification_enabled",
            ),
            strictness=_as_choice(
                verification.get("strictness"), key="verification.strictness", allowed=_ALLOWED_STRICTNESS
            ),
        ),
        retry_delays=RetryDelaysConfig(
            invalid_parameter_ms=_as_int(
                delays.get("invalid_parameter"), key="retry_delays_ms.invalid_parameter", min_v=0
            ),
            element_not_found_ms=_as_int(
                delays.get("element_not_found"), key="retry_delays_ms.element_not_found", min_v=0
            ),
            type_not_available_ms=_as_int(
                delays.get("type_not_available"), key="retry_delays_ms.type_not_available", min_v=0
            ),
            transaction_failed_ms=_as_int(
                delays.get("transaction_failed"), key="retry_delays_ms.transaction_failed", min_v=0
            ),
            timeout_ms=_as_int(delays.get("timeout"), key="retry_delays_ms.timeout", min_v=0),
        ),
        journal=JournalConfig(
            enabled=_as_bool(journal.get("enabled"), key="journal.enabled"),
        ),
        prompts=PromptConfig(
            verification_directive_template=_as_str(
                prompts.get("verification_directive_template"),
                key="prompts.verification_directive_template",
            ),
            minimal_instruction=_as_str(prompts.get("minimal_instruction"), key="prompts.minimal_instruction"),
            standard_instruction=_as_str(prompts.get("standard_instruction"), key="prompts.standard_instruction"),
            strict_instruction=_as_str(prompts.get("strict_instruction"), key="prompts.strict_instruction"),
        ),
    )


def default_app_config() -> AppConfig:
    """Built-in defaults (no file). Env overrides still apply."""
    return _build_config({})


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e
    return _build_config(raw)
