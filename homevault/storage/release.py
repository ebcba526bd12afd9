"""
Filesystem tools and controlled release of a mount point.

Provides:
- Mounter / SystemMounter: format, mount, unmount and mount inspection
- ProcessReleaser / PsutilProcessReleaser: terminate processes holding a path
- controlled_release: graceful -> forced -> lazy unmount escalation
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional

import psutil

from .errors import FormatFailed, MountFailed, Unmountable

logger = logging.getLogger(__name__)


class Mounter:
    """Interface over the filesystem tools the guard needs."""

    def format(self, device: str, fs_type: str):
        raise NotImplementedError

    def mount(self, device: str, path: str, fs_type: str, options: str):
        raise NotImplementedError

    def unmount(self, path: str, lazy: bool = False) -> bool:
        raise NotImplementedError

    def is_mounted(self, path: str) -> bool:
        raise NotImplementedError

    def source_at(self, path: str) -> Optional[str]:
        raise NotImplementedError


class SystemMounter(Mounter):
    """
    Mounter driving mkfs/mount/umount through subprocess.
    """

    # Flag forcing mkfs to overwrite an existing signature
    FORCE_FLAGS = {
        'ext2': '-F',
        'ext3': '-F',
        'ext4': '-F',
        'xfs': '-f',
        'btrfs': '-f',
    }

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        logger.debug("Running: %s", ' '.join(cmd))
        return subprocess.run(cmd, capture_output=True, text=True, check=True)

    def format(self, device: str, fs_type: str):
        """
        Create a filesystem on a device, overwriting any existing signature.

        Raises:
            FormatFailed: If mkfs fails
        """
        cmd = [f'mkfs.{fs_type}']
        if fs_type in self.FORCE_FLAGS:
            cmd.append(self.FORCE_FLAGS[fs_type])
        cmd.append(device)

        try:
            self._run(cmd)
        except FileNotFoundError:
            raise FormatFailed(f"mkfs.{fs_type} not found")
        except subprocess.CalledProcessError as e:
            raise FormatFailed(f"Formatting {device} as {fs_type} failed: {e.stderr.strip() or e}")

    def mount(self, device: str, path: str, fs_type: str, options: str):
        """
        Mount a device and check that the mount is in place.

        Raises:
            MountFailed: If mount fails or the path is not a mount point afterwards
        """
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
            self._run(['mount', '-t', fs_type, '-o', options, device, path])
        except OSError as e:
            raise MountFailed(f"Mounting {device} at {path} failed: {e}")
        except subprocess.CalledProcessError as e:
            raise MountFailed(f"Mounting {device} at {path} failed: {e.stderr.strip() or e}")

        if not self.is_mounted(path):
            raise MountFailed(f"{path} is not a mount point after mounting {device}")

    def unmount(self, path: str, lazy: bool = False) -> bool:
        cmd = ['umount', '-l', path] if lazy else ['umount', path]
        try:
            self._run(cmd)
            return True
        except subprocess.CalledProcessError as e:
            logger.warning("%s failed: %s", ' '.join(cmd), e.stderr.strip() or e)
            return False

    def is_mounted(self, path: str) -> bool:
        return os.path.ismount(path)

    def source_at(self, path: str) -> Optional[str]:
        wanted = str(Path(path))
        for partition in psutil.disk_partitions(all=True):
            if partition.mountpoint == wanted:
                return partition.device
        return None


class ProcessReleaser:
    """Interface: make processes let go of a path."""

    def force_release(self, path: str) -> int:
        raise NotImplementedError


class PsutilProcessReleaser(ProcessReleaser):
    """
    Terminate processes with open files or a working directory under a path.
    """

    def __init__(self, timeout: float = 3.0):
        self.timeout = timeout

    @staticmethod
    def _is_under(candidate: str, root: str) -> bool:
        return candidate == root or candidate.startswith(root.rstrip('/') + '/')

    def _holders(self, path: str) -> List[psutil.Process]:
        holders = []
        for proc in psutil.process_iter(['pid', 'name']):
            if proc.pid == os.getpid():
                continue
            try:
                paths = [f.path for f in proc.open_files()]
                paths.append(proc.cwd())
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if any(self._is_under(p, path) for p in paths):
                holders.append(proc)
        return holders

    def force_release(self, path: str) -> int:
        """
        Terminate every process holding the path, killing the ones that linger.

        Returns:
            Number of processes signalled
        """
        holders = self._holders(str(Path(path)))
        if not holders:
            return 0

        for proc in holders:
            try:
                logger.warning("Terminating pid=%d (%s) holding %s", proc.pid, proc.info.get('name'), path)
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.error("Failed to terminate pid=%d: %s", proc.pid, e)

        _, alive = psutil.wait_procs(holders, timeout=self.timeout)
        for proc in alive:
            try:
                logger.warning("Killing pid=%d still holding %s", proc.pid, path)
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.error("Failed to kill pid=%d: %s", proc.pid, e)

        return len(holders)


def controlled_release(path, mounter: Mounter, releaser: ProcessReleaser) -> str:
    """
    Unmount a path, escalating until it is free.

    1. graceful unmount
    2. terminate holders, unmount again
    3. lazy unmount

    Args:
        path: Mount point to free
        mounter: Mounter used for unmounting
        releaser: ProcessReleaser used to terminate holders

    Returns:
        Name of the step that freed the path ('graceful', 'forced' or 'lazy'),
        or 'not-mounted' if nothing was mounted

    Raises:
        Unmountable: If the path is still mounted after all three steps
    """
    path = str(path)

    if not mounter.is_mounted(path):
        return 'not-mounted'

    logger.info("Unmounting %s", path)
    mounter.unmount(path)
    if not mounter.is_mounted(path):
        return 'graceful'

    count = releaser.force_release(path)
    logger.info("Released %d process(es) holding %s; retrying unmount", count, path)
    mounter.unmount(path)
    if not mounter.is_mounted(path):
        return 'forced'

    logger.info("Trying lazy unmount of %s", path)
    mounter.unmount(path, lazy=True)
    if not mounter.is_mounted(path):
        return 'lazy'

    raise Unmountable(
        f"Could not unmount {path}. Stop the services using it and try again."
    )
