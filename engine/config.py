"""
Loan Harness - Environment Config Loader

Three-tier configuration loading:
  1. Base YAML file (harness_config.yaml, or the path in LH_CONFIG)
  2. Per-environment overlay files (config/{LH_ENV}.yaml merged over base)
  3. Environment variable overrides (LH_ prefixed)

The merged dict is turned into a typed HarnessSettings object that the
orchestrator, the gateway and the operator CLI share.

Usage:
    from engine.config import load_settings

    settings = load_settings()
    settings.faucet.btc_url
    settings.settle.after_funding

Environment variables:
    LH_ENV          - active profile (dev, staging, prod)
    LH_CONFIG       - base config path (default: harness_config.yaml)
    LH_CONFIG_DIR   - directory for overlay files (default: config/)
    LH_*            - overrides (e.g., LH_FAUCET_SATS=50000)
"""

from __future__ import annotations

import copy
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("loan_harness.config")

# Not treated as overrides.
META_VARS = {"LH_ENV", "LH_CONFIG", "LH_CONFIG_DIR", "LH_WORKER_MODE", "LH_VERSION"}


def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml next to the working directory,
    then config/{env}.yaml next to the base file.
    """
    env = env or os.environ.get("LH_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("LH_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)
                continue
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _split_env_key(raw: str) -> list[str]:
    """LH_FAUCET_BTC_URL -> ["faucet", "btc_url"]. Settings are two levels deep."""
    section, _, rest = raw.lower().partition("_")
    return [section, rest] if rest else [section]


def _load_env_overrides(prefix: str = "LH_") -> dict[str, Any]:
    """
    Load LH_ prefixed environment variables as config overrides.

    Naming convention:
      LH_SECTION_KEY=value -> {"section": {"key": value}}

    Values are parsed as YAML scalars so numbers and booleans keep
    their type.
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in META_VARS:
            continue
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
        _set_nested(overrides, _split_env_key(key[len(prefix):]), parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (LH_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (harness_config.yaml)
    """
    base_path = base_path or os.environ.get("LH_CONFIG", "harness_config.yaml")

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("LH_ENV", "default")
    config["_config_source"] = base_path

    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("faucet.sats", cfg, 100000)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class FaucetSettings:
    btc_url: str = "https://faucet.testnet.lava.xyz/mint-mutinynet"
    lava_usd_url: str = "https://faucet.testnet.lava.xyz/transfer-lava-usd"
    sats: int = 100000
    timeout_seconds: float = 30.0


@dataclass
class CredentialSettings:
    # Fixed test addresses; not derived from the mnemonic.
    btc_address: str = "tb1qxasf0jlsssl3xz8xvl8pmg8d8zpljqmervhtrr"
    lava_usd_pubkey: str = "CU9KRXJobqo1HVbaJwoWpnboLFXw3bef54xJ1dewXzcf"
    strength: int = 128


@dataclass
class CliSettings:
    executable: str = ""
    install_dir: str = field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "lava-cli"))
    download_url: str = "https://loans-borrower-cli.s3.amazonaws.com/loans-borrower-cli-linux"
    binary_name: str = "loans-borrower-cli"
    global_args: list[str] = field(
        default_factory=lambda: ["--testnet", "--disable-backup-contracts"])
    loan_capital_asset: str = "solana-lava-usd"
    ltv_ratio_bp: int = 5000
    loan_duration_days: int = 4
    loan_amount: int = 2
    timeout_seconds: float | None = None


@dataclass
class SettleSettings:
    after_funding: float = 10.0
    after_cli_step: float = 5.0
    poll_interval: float = 0.5


@dataclass
class StorageSettings:
    db_path: str = "test_results.db"
    work_dir: str = field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "lava-test-runs"))


@dataclass
class WorkerSettings:
    mode: str = "thread"
    max_workers: int = 4
    max_finished_jobs: int = 1000


@dataclass
class HarnessSettings:
    faucet: FaucetSettings = field(default_factory=FaucetSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    cli: CliSettings = field(default_factory=CliSettings)
    settle: SettleSettings = field(default_factory=SettleSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    simulate: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> HarnessSettings:
        """Build settings from a merged config dict. Unknown keys are ignored."""
        def section(name: str, klass):
            raw = config.get(name) or {}
            if not isinstance(raw, dict):
                logger.warning("Ignoring %s settings: expected a mapping, got %r", name, raw)
                raw = {}
            known = {k: v for k, v in raw.items() if k in klass.__dataclass_fields__}
            unknown = set(raw) - set(known)
            if unknown:
                logger.warning("Ignoring unknown %s settings: %s", name, sorted(unknown))
            return klass(**known)

        settings = cls(
            faucet=section("faucet", FaucetSettings),
            credentials=section("credentials", CredentialSettings),
            cli=section("cli", CliSettings),
            settle=section("settle", SettleSettings),
            storage=section("storage", StorageSettings),
            worker=section("worker", WorkerSettings),
            simulate=bool(get_config_value("simulation.enabled", config, False)),
            log_level=str(get_config_value("logging.level", config, "INFO")),
        )
        if isinstance(settings.cli.global_args, str):
            settings.cli.global_args = settings.cli.global_args.split()
        mode = os.environ.get("LH_WORKER_MODE")
        if mode:
            settings.worker.mode = mode
        return settings


def load_settings(base_path: str = "", env: str = "") -> HarnessSettings:
    """Load and type the merged configuration."""
    return HarnessSettings.from_config(load_config(base_path=base_path, env=env))
