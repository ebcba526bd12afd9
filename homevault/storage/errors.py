"""Exceptions raised on the provisioning path."""


class StorageError(Exception):
    """Base class for provisioning failures."""
    pass


class DeviceNotFound(StorageError):
    """Raised when no block device matches the requested class."""
    pass


class ConfirmationRequired(StorageError):
    """Raised when an operator decision is needed but none was given."""
    pass


class Unmountable(StorageError):
    """Raised when a mount point survives graceful, forced and lazy unmount."""
    pass


class FormatFailed(StorageError):
    """Raised when creating a filesystem fails."""
    pass


class MountFailed(StorageError):
    """Raised when mounting the device fails."""
    pass


class LayoutError(StorageError):
    """Raised when the directory layout cannot be created."""
    pass


class MountTableError(StorageError):
    """Raised when the persisted mount table cannot be read or written."""
    pass
