import os
from pathlib import Path
from typing import Optional

import yaml

from patchbay_core.errors import ConfigError
from patchbay_core.utils.keys import canonical_pubkey

DEFAULT_CONFIG_PATH = "patchbay.yml"

DEFAULT_CONFIG: dict = {
    "data_dir": "./data",
    "url": "localhost",
    "admins": [],  # authorized_keys lines; options and comments are stripped on load
    "time_format": "%Y-%m-%d %H:%M",  # "" hides dates in listings
    "create_repo": "user",  # "admin" = only admins create repos
    "host": "0.0.0.0",
    "ssh_port": 2222,
    "log_level": "INFO",
    "db_path": None,  # None = <data_dir>/pr.db
    "log_file": None,  # None = <data_dir>/patchbay.log
}

# Environment variable -> config key. Applied last, so they win over the file.
ENV_OVERRIDES = {
    "SSH_HOST": "host",
    "SSH_PORT": "ssh_port",
    "PATCHBAY_DATA_DIR": "data_dir",
}


def load_config(config_path: str = DEFAULT_CONFIG_PATH, cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. patchbay.yml (or ``config_path``)
      3. CLI argument overrides
      4. Environment variables (SSH_HOST, SSH_PORT, PATCHBAY_DATA_DIR)

    Raises ConfigError for values the server cannot run with.
    """
    config = {**DEFAULT_CONFIG, "admins": list(DEFAULT_CONFIG["admins"])}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            try:
                file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"{config_path} is not valid YAML: {exc}")
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    for env, key in ENV_OVERRIDES.items():
        if os.environ.get(env):
            config[key] = os.environ[env]

    return _normalise(config)


def _normalise(config: dict) -> dict:
    if config["create_repo"] not in ("admin", "user"):
        raise ConfigError(f"create_repo must be 'admin' or 'user', got {config['create_repo']!r}")

    try:
        config["ssh_port"] = int(config["ssh_port"])
    except (TypeError, ValueError):
        raise ConfigError(f"ssh_port must be an integer, got {config['ssh_port']!r}")

    admins = config["admins"] or []
    if isinstance(admins, str):
        admins = [admins]
    canonical = []
    for line in admins:
        try:
            canonical.append(canonical_pubkey(line))
        except ValueError as exc:
            raise ConfigError(f"invalid admin key {line!r}: {exc}")
    config["admins"] = canonical

    config["time_format"] = config["time_format"] or ""
    data_dir = Path(config["data_dir"])
    config["data_dir"] = str(data_dir)
    config["db_path"] = str(config["db_path"] or data_dir / "pr.db")
    config["log_file"] = str(config["log_file"] or data_dir / "patchbay.log")
    return config
