"""
Configuration Dataclasses

Type-safe settings for the locator and member processes.
Settings come from a YAML file with CLUSTERCFG_* environment overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .logging_setup import get_service_logger

logger = get_service_logger("settings")

# Name of the cluster-wide configuration record
CLUSTER_CONFIG = "cluster"
# Directory under the configuration root that holds the record tree
CLUSTER_CONFIG_DIR_NAME = "cluster_config"
# Prefix added to artifacts installed on a member by the locator
DEFAULT_ARTIFACT_PREFIX = "vf.gf#"
# Property carrying the member's log file size limit
LOG_FILE_SIZE_LIMIT = "log-file-size-limit"

DEFAULT_LOCATOR_PORT = 10334
DEFAULT_MEMBER_PORT = 40404
DEFAULT_PUSH_TIMEOUT_SECONDS = 30.0

CONFIG_SEARCH_PATHS = [
    "/etc/clustercfg/config.yaml",
    "config.yaml",
]


@dataclass
class LocatorSettings:
    """Settings for the coordinating node"""
    enable_cluster_configuration: bool = True
    cluster_configuration_dir: str = "."
    load_cluster_configuration_from_dir: bool = False
    host: str = "127.0.0.1"
    port: int = DEFAULT_LOCATOR_PORT
    push_timeout: float = DEFAULT_PUSH_TIMEOUT_SECONDS
    # Running locator whose configuration seeds an empty store on start
    peer_locator_url: str = ""

    @property
    def store_path(self) -> Path:
        """Canonical record tree location"""
        return Path(self.cluster_configuration_dir) / CLUSTER_CONFIG_DIR_NAME


@dataclass
class MemberSettings:
    """Settings for a member (server) node"""
    member_id: str = ""
    use_cluster_configuration: bool = True
    groups: list[str] = field(default_factory=list)
    locator_url: str = f"http://127.0.0.1:{DEFAULT_LOCATOR_PORT}"
    work_dir: str = "."
    host: str = "127.0.0.1"
    port: int = DEFAULT_MEMBER_PORT
    artifact_prefix: str = DEFAULT_ARTIFACT_PREFIX
    join_timeout: float = 30.0

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class Settings:
    """Top-level settings file"""
    locator: LocatorSettings = field(default_factory=LocatorSettings)
    member: MemberSettings = field(default_factory=MemberSettings)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_group_list(value: Any) -> list[str]:
    """Parse a comma-separated group string (or list) into group names"""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(g).strip() for g in value if str(g).strip()]


def find_config_path() -> str | None:
    """Return the first settings file found, or None"""
    for path in CONFIG_SEARCH_PATHS:
        if Path(path).exists():
            return path
    return None


def _apply_env(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay CLUSTERCFG_* environment variables"""
    locator = data.setdefault("locator", {})
    member = data.setdefault("member", {})

    env_map = {
        "CLUSTERCFG_ENABLE_CLUSTER_CONFIGURATION": (locator, "enable_cluster_configuration"),
        "CLUSTERCFG_CLUSTER_CONFIGURATION_DIR": (locator, "cluster_configuration_dir"),
        "CLUSTERCFG_LOAD_CLUSTER_CONFIGURATION_FROM_DIR": (locator, "load_cluster_configuration_from_dir"),
        "CLUSTERCFG_LOCATOR_PORT": (locator, "port"),
        "CLUSTERCFG_PUSH_TIMEOUT": (locator, "push_timeout"),
        "CLUSTERCFG_PEER_LOCATOR_URL": (locator, "peer_locator_url"),
        "CLUSTERCFG_USE_CLUSTER_CONFIGURATION": (member, "use_cluster_configuration"),
        "CLUSTERCFG_MEMBER_ID": (member, "member_id"),
        "CLUSTERCFG_GROUPS": (member, "groups"),
        "CLUSTERCFG_LOCATOR_URL": (member, "locator_url"),
        "CLUSTERCFG_WORK_DIR": (member, "work_dir"),
        "CLUSTERCFG_MEMBER_PORT": (member, "port"),
    }
    for env_name, (section, key) in env_map.items():
        value = os.environ.get(env_name)
        if value is not None:
            section[key] = value

    return data


def build_settings(data: dict[str, Any]) -> Settings:
    """
    Build Settings from a parsed dictionary.

    Args:
        data: Dictionary with optional "locator" and "member" sections

    Returns:
        Settings with defaults filled in
    """
    loc = data.get("locator") or {}
    mem = data.get("member") or {}

    locator = LocatorSettings(
        enable_cluster_configuration=_as_bool(loc.get("enable_cluster_configuration", True)),
        cluster_configuration_dir=str(loc.get("cluster_configuration_dir", ".")),
        load_cluster_configuration_from_dir=_as_bool(
            loc.get("load_cluster_configuration_from_dir", False)
        ),
        host=loc.get("host", "127.0.0.1"),
        port=int(loc.get("port", DEFAULT_LOCATOR_PORT)),
        push_timeout=float(loc.get("push_timeout", DEFAULT_PUSH_TIMEOUT_SECONDS)),
        peer_locator_url=str(loc.get("peer_locator_url") or "").rstrip("/"),
    )

    member = MemberSettings(
        member_id=str(mem.get("member_id", "")),
        use_cluster_configuration=_as_bool(mem.get("use_cluster_configuration", True)),
        groups=parse_group_list(mem.get("groups")),
        locator_url=mem.get("locator_url", f"http://127.0.0.1:{DEFAULT_LOCATOR_PORT}"),
        work_dir=str(mem.get("work_dir", ".")),
        host=mem.get("host", "127.0.0.1"),
        port=int(mem.get("port", DEFAULT_MEMBER_PORT)),
        artifact_prefix=mem.get("artifact_prefix", DEFAULT_ARTIFACT_PREFIX),
        join_timeout=float(mem.get("join_timeout", 30.0)),
    )

    return Settings(locator=locator, member=member)


def load_settings(config_path: str | None = None) -> Settings:
    """
    Load settings from a YAML file plus environment overrides.

    A missing or unparsable file falls back to defaults.
    """
    path = config_path or find_config_path()
    data: dict[str, Any] = {}

    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Settings file not found: {path}")
        except yaml.YAMLError as e:
            logger.error(f"Error parsing settings: {e}")

    return build_settings(_apply_env(data))
