"""Load and validate the YAML settings file."""
from __future__ import annotations

import os

import yaml

from zfsh.models import RetentionPolicy, Settings
from zfsh.naming import COMPRESSIONS
from zfsh.retention import PolicyError, validate_policy
from zfsh.units import ParseError, parse_duration

DEFAULT_CONFIG_PATH = "/etc/zfsh/zfsh.yaml"
CONFIG_ENV = "ZFSH_CONFIG"

_POLICY_KEYS = ("keep_last", "keep_daily", "keep_weekly", "keep_monthly", "older_than")


class ConfigError(Exception):
    pass


def _load_policy(name: str, raw) -> RetentionPolicy:
    if not isinstance(raw, dict):
        raise ConfigError(f"policies.{name} must be a mapping")
    unknown = set(raw) - set(_POLICY_KEYS)
    if unknown:
        raise ConfigError(f"policies.{name}: unknown key(s) {', '.join(sorted(unknown))}")
    counts = {}
    for key in _POLICY_KEYS[:4]:
        try:
            counts[key] = int(raw.get(key, 0) or 0)
        except (TypeError, ValueError):
            raise ConfigError(f"policies.{name}.{key} must be an integer, got {raw[key]!r}")
    older_than = None
    if raw.get("older_than") is not None:
        try:
            older_than = parse_duration(str(raw["older_than"]))
        except ParseError as e:
            raise ConfigError(f"policies.{name}.older_than: {e}")
    policy = RetentionPolicy(older_than=older_than, **counts)
    try:
        return validate_policy(policy)
    except PolicyError as e:
        raise ConfigError(f"policies.{name}: {e}")


def resolve_config_path(path: str | None = None) -> tuple[str, bool]:
    """Return (path, explicit). Explicit paths must exist; the default may not."""
    if path:
        return path, True
    env = os.environ.get(CONFIG_ENV)
    if env:
        return env, True
    return DEFAULT_CONFIG_PATH, False


def load_settings(path: str | None = None) -> Settings:
    path, explicit = resolve_config_path(path)
    if not os.path.exists(path):
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return Settings()

    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")

    if raw is None:
        return Settings()
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    settings = Settings()

    backup_dir = raw.get("backup_dir", settings.backup_dir)
    if not backup_dir:
        raise ConfigError("backup_dir must not be empty")
    settings.backup_dir = str(backup_dir)

    compression = raw.get("compression", settings.compression)
    if compression not in COMPRESSIONS:
        raise ConfigError(
            f"compression must be one of {', '.join(COMPRESSIONS)}, got {compression!r}"
        )
    settings.compression = compression

    prefix = raw.get("snapshot_prefix", settings.snapshot_prefix)
    if not prefix or "@" in str(prefix) or "/" in str(prefix):
        raise ConfigError(f"snapshot_prefix is not a valid snapshot name prefix: {prefix!r}")
    settings.snapshot_prefix = str(prefix)

    log_file = raw.get("log_file")
    settings.log_file = str(log_file) if log_file else None

    policies_raw = raw.get("policies") or {}
    if not isinstance(policies_raw, dict):
        raise ConfigError("policies must be a mapping of name -> policy")
    settings.policies = {
        str(name): _load_policy(str(name), policy_raw)
        for name, policy_raw in policies_raw.items()
    }

    return settings
