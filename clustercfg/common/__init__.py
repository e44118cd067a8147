"""
Common Utilities

Shared modules used by the locator and member services:
- config.py - Settings dataclasses and constants
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
"""

from .config import (
    CLUSTER_CONFIG,
    CLUSTER_CONFIG_DIR_NAME,
    DEFAULT_ARTIFACT_PREFIX,
    LOG_FILE_SIZE_LIMIT,
    LocatorSettings,
    MemberSettings,
    Settings,
    build_settings,
    load_settings,
    parse_group_list,
)
from .exceptions import (
    ClusterConfigError,
    StoreIOError,
    StoreInvariantError,
    CorruptArchiveError,
    ConflictError,
    NoMembersAvailableError,
    ApplyFailure,
    PermissionDeniedError,
    ServiceDisabledError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    ServiceLoggerAdapter,
    log_artifact_event,
    log_member_event,
)

__all__ = [
    # Config
    "CLUSTER_CONFIG",
    "CLUSTER_CONFIG_DIR_NAME",
    "DEFAULT_ARTIFACT_PREFIX",
    "LOG_FILE_SIZE_LIMIT",
    "LocatorSettings",
    "MemberSettings",
    "Settings",
    "build_settings",
    "load_settings",
    "parse_group_list",
    # Exceptions
    "ClusterConfigError",
    "StoreIOError",
    "StoreInvariantError",
    "CorruptArchiveError",
    "ConflictError",
    "NoMembersAvailableError",
    "ApplyFailure",
    "PermissionDeniedError",
    "ServiceDisabledError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "ServiceLoggerAdapter",
    "log_artifact_event",
    "log_member_event",
]
