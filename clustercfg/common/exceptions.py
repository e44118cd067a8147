"""
Custom Exception Classes for clustercfg

Hierarchical exception structure for error handling across the locator
and member services.
"""


class ClusterConfigError(Exception):
    """Base exception for all cluster configuration errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class StoreIOError(ClusterConfigError):
    """Disk read/write failure in the configuration store"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(f"Store IO Error: {message}", recoverable=True)


class StoreInvariantError(ClusterConfigError):
    """Store content violates a structural invariant (startup fault)"""

    def __init__(self, message: str):
        super().__init__(f"Store Invariant Violated: {message}", recoverable=False)


class CorruptArchiveError(ClusterConfigError):
    """Malformed configuration archive"""

    def __init__(self, message: str, entry: str | None = None):
        self.entry = entry
        super().__init__(f"Corrupt Archive: {message}", recoverable=True)


class ConflictError(ClusterConfigError):
    """Operation rejected because of the locator's current session state"""

    def __init__(self, message: str, member_ids: list[str] | None = None):
        self.member_ids = member_ids or []
        super().__init__(f"Conflict: {message}", recoverable=True)


class NoMembersAvailableError(ClusterConfigError):
    """
    Deploy accepted by the store but no member was connected to receive it.

    The artifact stays recorded for future joiners.
    """

    def __init__(self, artifact=None):
        self.artifact = artifact
        name = artifact.stored_file_name if artifact is not None else "artifact"
        super().__init__(
            f"No members found to deploy {name}; it is recorded for members joining later",
            recoverable=True,
        )


class ApplyFailure(ClusterConfigError):
    """Member-side failure applying a region or artifact"""

    def __init__(self, message: str, subject: str | None = None, member_id: str | None = None):
        self.subject = subject
        self.member_id = member_id
        super().__init__(message, recoverable=True)

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "member_id": self.member_id,
            "message": self.message,
        }


class PermissionDeniedError(ClusterConfigError):
    """Caller lacks the permission required by the operation"""

    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(f"Permission denied: {permission}", recoverable=False)


class ServiceDisabledError(ClusterConfigError):
    """Cluster configuration service is disabled on this node"""

    def __init__(self, node: str):
        super().__init__(f"Cluster configuration is disabled on {node}", recoverable=False)
