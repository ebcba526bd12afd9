"""
Block-device discovery.

Provides:
- BlockDevice: typed record of one disk (and its partitions)
- DeviceInventory / LsblkInventory: structured enumeration of block devices
- resolve_device: pick the single candidate of a device class
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .errors import DeviceNotFound, StorageError

logger = logging.getLogger(__name__)


class MountState(Enum):
    """Where a device is mounted relative to the target mount path."""
    UNMOUNTED = 'unmounted'
    MOUNTED_AT_TARGET = 'mounted-at-target'
    MOUNTED_ELSEWHERE = 'mounted-elsewhere'


@dataclass(frozen=True)
class BlockDevice:
    """One block device as reported by the inventory."""
    name: str
    path: str
    type: str = 'disk'
    fstype: Optional[str] = None
    pttype: Optional[str] = None
    transport: Optional[str] = None
    removable: bool = False
    rotational: bool = False
    size: int = 0
    mountpoints: Tuple[str, ...] = ()
    partitions: Tuple['BlockDevice', ...] = ()

    @property
    def has_signature(self) -> bool:
        """True if the device may hold data (filesystem, partition table or partitions)."""
        return bool(self.fstype or self.pttype or self.partitions)

    @property
    def mount_source(self) -> str:
        """
        Device node to mount.

        The disk itself when the filesystem sits on the whole disk, otherwise
        the only partition carrying a filesystem.
        """
        if self.fstype:
            return self.path
        formatted = self.formatted_partitions
        if len(formatted) == 1:
            return formatted[0].path
        return self.path

    @property
    def formatted_partitions(self) -> Tuple['BlockDevice', ...]:
        return tuple(p for p in self.partitions if p.fstype)

    @property
    def ambiguous_source(self) -> bool:
        """True if several partitions carry a filesystem and none can be picked."""
        return not self.fstype and len(self.formatted_partitions) > 1

    @property
    def all_mountpoints(self) -> Tuple[str, ...]:
        points = list(self.mountpoints)
        for partition in self.partitions:
            points.extend(partition.mountpoints)
        return tuple(points)

    def mount_state(self, target) -> MountState:
        """
        Classify the device's mount state against a target path.

        Args:
            target: Mount path the device should end up on

        Returns:
            MountState
        """
        points = self.all_mountpoints
        if not points:
            return MountState.UNMOUNTED
        target = str(Path(target))
        if any(str(Path(p)) == target for p in points):
            return MountState.MOUNTED_AT_TARGET
        return MountState.MOUNTED_ELSEWHERE


class DeviceInventory:
    """Interface: enumerate block devices as BlockDevice records."""

    def list_devices(self) -> List[BlockDevice]:
        raise NotImplementedError


def _flag(value) -> bool:
    # lsblk emits booleans in newer releases and "0"/"1" strings in older ones
    if isinstance(value, str):
        return value.strip() not in ('', '0', 'false')
    return bool(value)


def _size(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class LsblkInventory(DeviceInventory):
    """
    Linux inventory backed by `lsblk --json`.
    """

    COLUMNS = 'NAME,PATH,TYPE,FSTYPE,PTTYPE,MOUNTPOINT,TRAN,RM,ROTA,SIZE'

    def __init__(self, lsblk_path: str = 'lsblk'):
        self.lsblk_path = lsblk_path

    def list_devices(self) -> List[BlockDevice]:
        """
        List whole disks with their partitions, in lsblk enumeration order.

        Raises:
            StorageError: If lsblk fails or returns unparsable output
        """
        cmd = [self.lsblk_path, '--json', '--bytes', '--output', self.COLUMNS]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except FileNotFoundError:
            raise StorageError(f"Block device listing failed: {self.lsblk_path} not found")
        except subprocess.CalledProcessError as e:
            raise StorageError(f"Block device listing failed: {e.stderr.strip() or e}")

        try:
            data = json.loads(result.stdout)
        except ValueError as e:
            raise StorageError(f"Unparsable lsblk output: {e}")

        return self.parse(data)

    @classmethod
    def parse(cls, data: Dict) -> List[BlockDevice]:
        devices = []
        for entry in data.get('blockdevices', []):
            if entry.get('type') != 'disk':
                continue
            devices.append(cls._to_device(entry))
        return devices

    @classmethod
    def _to_device(cls, entry: Dict, parent_transport: Optional[str] = None) -> BlockDevice:
        name = entry.get('name', '')
        points = entry.get('mountpoints')
        if points is None:
            points = [entry.get('mountpoint')]
        transport = entry.get('tran') or parent_transport

        return BlockDevice(
            name=name,
            path=entry.get('path') or f'/dev/{name}',
            type=entry.get('type', 'disk'),
            fstype=entry.get('fstype') or None,
            pttype=entry.get('pttype') or None,
            transport=transport,
            removable=_flag(entry.get('rm')),
            rotational=_flag(entry.get('rota')),
            size=_size(entry.get('size')),
            mountpoints=tuple(p for p in points if p),
            partitions=tuple(
                cls._to_device(child, transport) for child in entry.get('children', [])
            ),
        )


def _is_nvme(device: BlockDevice) -> bool:
    return device.transport == 'nvme' or device.name.startswith('nvme')


def _is_usb_ssd(device: BlockDevice) -> bool:
    return device.transport == 'usb' and not device.rotational


def _is_removable(device: BlockDevice) -> bool:
    return device.removable


DEVICE_CLASSES: Dict[str, Callable[[BlockDevice], bool]] = {
    'nvme': _is_nvme,
    'usb-ssd': _is_usb_ssd,
    'removable': _is_removable,
}


def resolve_device(inventory: DeviceInventory, device_class: str) -> BlockDevice:
    """
    Return the single candidate device of a class.

    With several matches the first one in enumeration order is returned.

    Args:
        inventory: Device inventory to scan
        device_class: One of DEVICE_CLASSES

    Returns:
        The selected BlockDevice

    Raises:
        ValueError: If device_class is unknown
        DeviceNotFound: If no device matches
    """
    if device_class not in DEVICE_CLASSES:
        raise ValueError(
            f"Invalid device class: {device_class}. "
            f"Valid options: {list(DEVICE_CLASSES.keys())}"
        )

    matches = [d for d in inventory.list_devices() if DEVICE_CLASSES[device_class](d)]

    if not matches:
        raise DeviceNotFound(f"No {device_class} device found")

    if len(matches) > 1:
        logger.warning(
            "Found %d %s devices (%s); using the first: %s",
            len(matches), device_class, ', '.join(d.path for d in matches), matches[0].path
        )

    return matches[0]
