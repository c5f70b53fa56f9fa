"""Exception types raised by lorehub."""


class LoreHubError(Exception):
    """Base class for lorehub errors."""

    pass


class DeviceIdentityError(LoreHubError):
    """Raised when the device identity cannot be read or persisted."""

    pass


class SyncLockError(LoreHubError):
    """Raised when a workspace sync lock cannot be acquired in time."""

    pass


class DuplicateRelationError(LoreHubError):
    """Raised when a relation with the same (from, to, type) already exists."""

    pass


class GitCommandError(LoreHubError):
    """Raised when a git command exits with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.command = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {self.stderr or 'no output'}"
        )
