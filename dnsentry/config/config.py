"""
Configuration module for dnsentry.
"""

import os
import re
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field

DEFAULT_DURATION = 60


def parse_duration(duration: Union[str, int, float, None], default: int = DEFAULT_DURATION) -> int:
    """
    Parse a duration like '15m' into seconds.

    Args:
        duration: Duration string (Ns, Nm, Nh, Nd) or a number of seconds
        default: Value returned for empty or malformed durations

    Returns:
        int: Duration in seconds
    """
    if duration is None or duration == "":
        return default
    if isinstance(duration, (int, float)):
        return int(duration)

    match = re.match(r"^(\d+)([smhd]?)$", duration.strip())
    if not match:
        return default

    value, unit = match.groups()
    value = int(value)

    if unit in ("", "s"):
        return value
    elif unit == "m":
        return value * 60
    elif unit == "h":
        return value * 60 * 60
    elif unit == "d":
        return value * 60 * 60 * 24

    return default


class Config(BaseModel):
    """Configuration for dnsentry."""

    # Controller configuration
    ident: str = "dnsentry"
    provider_types: List[str] = Field(default_factory=lambda: ["mock"])
    reschedule_delay: str = "2m"
    interval: str = "1m"
    workers: int = 5
    once: bool = False
    dry_run: bool = False
    retry_delay: str = "10s"
    max_retry_delay: str = "5m"

    # Entry configuration
    cname_lookup_interval: int = 600
    too_many_targets_interval: int = 84600
    max_cname_targets: int = 11

    # Owner and access configuration
    owner_ids: List[str] = Field(default_factory=list)
    realms: List[str] = Field(default_factory=list)

    # Entries and providers to seed
    manifest: Optional[str] = None

    # Logging configuration
    log_level: str = "info"

    @property
    def reschedule_delay_seconds(self) -> int:
        return parse_duration(self.reschedule_delay, 120)

    @property
    def interval_seconds(self) -> int:
        return parse_duration(self.interval)

    @property
    def retry_delay_seconds(self) -> int:
        return parse_duration(self.retry_delay, 10)

    @property
    def max_retry_delay_seconds(self) -> int:
        return parse_duration(self.max_retry_delay, 300)

    @classmethod
    def from_yaml(cls, config_path: Optional[Union[str, Path]] = None) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Config: Config instance populated with values from the YAML file
        """
        default_paths = [
            Path("./dnsentry.yaml"),
            Path("./dnsentry.yml"),
            Path("/etc/dnsentry/config.yaml"),
        ]

        if config_path:
            paths = [Path(config_path)]
        else:
            paths = default_paths

        config_data = {}
        for path in paths:
            if path.exists():
                with open(path, "r") as f:
                    yaml_content = cls._substitute_env_vars(f.read())
                    config_data = yaml.safe_load(yaml_content) or {}
                break

        return cls(**cls._flatten_config(config_data))

    @staticmethod
    def _substitute_env_vars(content: str) -> str:
        """
        Substitute environment variables in the configuration content.

        Args:
            content: Configuration content

        Returns:
            str: Configuration content with environment variables substituted
        """
        # Pattern for ${ENV_VAR} or ${ENV_VAR:-default}
        pattern = r"\${([^}]+)}"

        def replace_env_var(match):
            env_var = match.group(1)
            if ":-" in env_var:
                env_var, default = env_var.split(":-", 1)
                return os.environ.get(env_var, default)
            return os.environ.get(env_var, "")

        return re.sub(pattern, replace_env_var, content)

    @staticmethod
    def _flatten_config(config_data: dict) -> dict:
        """
        Flatten nested configuration. Keys not present keep their defaults.

        Args:
            config_data: Nested configuration data

        Returns:
            dict: Flattened configuration data
        """
        flat_config = {}

        def take(section: dict, key: str, flat_key: Optional[str] = None):
            if key in section and section[key] is not None:
                flat_config[flat_key or key] = section[key]

        controller = config_data.get("controller") or {}
        for key in (
            "ident",
            "provider_types",
            "reschedule_delay",
            "interval",
            "workers",
            "once",
            "dry_run",
            "retry_delay",
            "max_retry_delay",
        ):
            take(controller, key)

        entries = config_data.get("entries") or {}
        for key in ("cname_lookup_interval", "too_many_targets_interval", "max_cname_targets"):
            take(entries, key)
        for key in ("cname_lookup_interval", "too_many_targets_interval"):
            if key in flat_config:
                flat_config[key] = parse_duration(flat_config[key])

        take(config_data.get("owners") or {}, "ids", "owner_ids")
        take(config_data.get("access") or {}, "realms")
        take(config_data, "manifest")
        take(config_data.get("logging") or {}, "level", "log_level")

        for key in ("reschedule_delay", "interval", "retry_delay", "max_retry_delay"):
            if key in flat_config:
                flat_config[key] = str(flat_config[key])

        return flat_config
