from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_CONFIG_PATH = Path("cicd-operator.toml")


@dataclass(frozen=True)
class OperatorConfig:
    external_hostname: str
    webhook_path: str = "webhook"
    max_pipeline_runs: int = 5
    request_timeout_seconds: int = 30
    bot_name: str = "cicd-bot"
    state_dir: Path | None = None

    def webhook_url(self, namespace: str, name: str) -> str:
        path = self.webhook_path.strip("/")
        return f"http://{self.external_hostname}/{path}/{namespace}/{name}"

    @property
    def status_context(self) -> str:
        return f"{self.bot_name}/pipeline"


class ConfigError(ValueError):
    pass


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> OperatorConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(cast(dict[str, object], data))


def parse_config(data: dict[str, object]) -> OperatorConfig:
    operator_data = _require_table(data, "operator")
    return OperatorConfig(
        external_hostname=_require_hostname(operator_data, "external_hostname"),
        webhook_path=_str_with_default(operator_data, "webhook_path", "webhook"),
        max_pipeline_runs=_positive_int_with_default(operator_data, "max_pipeline_runs", 5),
        request_timeout_seconds=_positive_int_with_default(
            operator_data, "request_timeout_seconds", 30
        ),
        bot_name=_str_with_default(operator_data, "bot_name", "cicd-bot"),
        state_dir=_optional_path(operator_data, "state_dir"),
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _require_hostname(data: dict[str, object], key: str) -> str:
    value = _require_str(data, key)
    if "://" in value or "/" in value:
        raise ConfigError(f"{key} must be a bare host name, got {value!r}")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _positive_int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be an integer >= 1")
    return value


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return Path(value).expanduser()
