"""TOML-based provider and orchestrator configuration.

Loads ~/.kloud/defaults.toml (global) and kloud.toml (project), merges them,
and resolves named providers into ready-to-register provider instances.

Example kloud.toml:

    [wait]
    attempts = 40
    interval = 5

    [logging]
    level = "DEBUG"
    console = true

    [keys]
    name = "kloud-deployment"
    public_key = "ssh-ed25519 AAAA..."

    [providers.rackspace]
    type = "openstack"
    region = "IAD"
"""

from __future__ import annotations

import tomllib
from dataclasses import fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kloud.constants import GLOBAL_CONFIG_DIR, GLOBAL_CONFIG_NAME, PROJECT_CONFIG_NAME
from kloud.exceptions import ConfigurationError
from kloud.observability.logging import LogConfig
from kloud.waitstate import WaitConfig

if TYPE_CHECKING:
    from kloud.kloud import Kloud
    from kloud.protocol import Deployer, Provider, Storage

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / GLOBAL_CONFIG_DIR / GLOBAL_CONFIG_NAME


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def _section(config: RawConfig, name: str) -> RawConfig:
    raw = config.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigurationError(f"'{name}' must be a table")
    return raw


def _build[T](cls: type[T], raw: RawConfig, what: str) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {what} option(s): {', '.join(sorted(unknown))}. Valid: {', '.join(sorted(known))}"
        )
    return cls(**raw)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("providers", {})
    merged.setdefault("wait", {})
    merged.setdefault("logging", {})
    return merged


def wait_config(config: RawConfig) -> WaitConfig:
    """Polling budget from the ``[wait]`` table."""
    return _build(WaitConfig, _section(config, "wait"), "wait")


def log_config(config: RawConfig) -> LogConfig:
    """Logging setup from the ``[logging]`` table."""
    return _build(LogConfig, _section(config, "logging"), "logging")


def _build_provider_config(name: str, raw: RawConfig, keys: RawConfig) -> Any:
    from kloud.providers.registry import provider_types

    raw = dict(raw)
    if "name" in keys:
        raw.setdefault("key_name", keys["name"])
    if "public_key" in keys:
        raw.setdefault("public_key", keys["public_key"])

    provider_type = raw.pop("type", None)
    if provider_type is None:
        raise ConfigurationError(f"Provider '{name}' missing 'type' field")

    provider_map = provider_types()
    cls = provider_map.get(provider_type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown provider type '{provider_type}'. "
            f"Valid: {', '.join(provider_map)}"
        )
    return _build(cls, raw, f"'{provider_type}' provider")


def resolve_provider(name: str, config: RawConfig) -> Provider:
    """Instantiate the provider configured under ``[providers.<name>]``."""
    from kloud.providers.registry import create_provider

    providers = _section(config, "providers")
    if name not in providers:
        raise ConfigurationError(
            f"Provider '{name}' not found. Available: {', '.join(providers) or 'none'}"
        )
    provider_config = _build_provider_config(name, providers[name], _section(config, "keys"))
    return create_provider(name, provider_config, wait=wait_config(config))


def create_kloud(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    storage: Storage | None = None,
    deployer: Deployer | None = None,
) -> Kloud:
    """A :class:`Kloud` with every configured provider registered."""
    from kloud.kloud import Kloud

    config = load_config(project_dir=project_dir, global_path=global_path)
    providers = [resolve_provider(name, config) for name in _section(config, "providers")]
    return Kloud(providers, storage=storage, deployer=deployer)
