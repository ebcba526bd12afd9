"""
Storage provisioning for homevault.

This package brings the data device to a mounted, usable state:
- Device discovery (block-device inventory)
- Mount/format guard with explicit operator decisions
- Persisted mount table (fstab)
- Directory layout provisioning
"""

from .errors import (
    StorageError,
    DeviceNotFound,
    ConfirmationRequired,
    Unmountable,
    FormatFailed,
    MountFailed,
    LayoutError,
    MountTableError,
)
from .devices import BlockDevice, LsblkInventory, resolve_device
from .guard import GuardState, MountGuard
from .layout import provision_layout
from .provisioner import Provisioner

__all__ = [
    'StorageError',
    'DeviceNotFound',
    'ConfirmationRequired',
    'Unmountable',
    'FormatFailed',
    'MountFailed',
    'LayoutError',
    'MountTableError',
    'BlockDevice',
    'LsblkInventory',
    'resolve_device',
    'GuardState',
    'MountGuard',
    'provision_layout',
    'Provisioner',
]
