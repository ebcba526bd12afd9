"""
Unit tests for filesystem tools and controlled release (homevault/storage/release.py).
"""

import subprocess
from unittest.mock import MagicMock, patch

import psutil
import pytest

from homevault.storage.errors import FormatFailed, MountFailed, Unmountable
from homevault.storage.release import (
    PsutilProcessReleaser,
    SystemMounter,
    controlled_release,
)


class TestControlledRelease:
    """Test graceful -> forced -> lazy escalation."""

    def test_not_mounted(self, mounter, releaser):
        assert controlled_release('/mnt/nvme', mounter, releaser) == 'not-mounted'
        assert mounter.calls == []

    def test_graceful(self, mounter, releaser):
        mounter.mounts['/mnt/nvme'] = '/dev/nvme0n1'

        assert controlled_release('/mnt/nvme', mounter, releaser) == 'graceful'
        assert releaser.released == []

    def test_forced(self, fakes, releaser):
        """Test holders are terminated when the first unmount fails."""
        mounter = fakes.Mounter(busy={'/mnt/nvme': 1})
        mounter.mounts['/mnt/nvme'] = '/dev/nvme0n1'

        assert controlled_release('/mnt/nvme', mounter, releaser) == 'forced'
        assert releaser.released == ['/mnt/nvme']

    def test_lazy(self, fakes, releaser):
        mounter = fakes.Mounter(busy={'/mnt/nvme': 2})
        mounter.mounts['/mnt/nvme'] = '/dev/nvme0n1'

        assert controlled_release('/mnt/nvme', mounter, releaser) == 'lazy'
        assert mounter.calls[-1] == ('umount', '/mnt/nvme', True)

    def test_unmountable(self, fakes, releaser):
        """Test a path still mounted after all steps raises Unmountable."""
        mounter = fakes.Mounter(stuck={'/mnt/nvme'})
        mounter.mounts['/mnt/nvme'] = '/dev/nvme0n1'

        with pytest.raises(Unmountable, match='/mnt/nvme'):
            controlled_release('/mnt/nvme', mounter, releaser)

        assert [c[2] for c in mounter.calls] == [False, False, True]


class TestSystemMounter:
    """Test subprocess command construction and error wrapping."""

    @patch('homevault.storage.release.subprocess.run')
    def test_format_ext4_forces(self, mock_run):
        SystemMounter().format('/dev/nvme0n1', 'ext4')

        assert mock_run.call_args[0][0] == ['mkfs.ext4', '-F', '/dev/nvme0n1']

    @patch('homevault.storage.release.subprocess.run')
    def test_format_xfs_forces(self, mock_run):
        SystemMounter().format('/dev/nvme0n1', 'xfs')

        assert mock_run.call_args[0][0] == ['mkfs.xfs', '-f', '/dev/nvme0n1']

    @patch('homevault.storage.release.subprocess.run')
    def test_format_failure(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, 'mkfs.ext4', stderr='device is busy')

        with pytest.raises(FormatFailed, match='device is busy'):
            SystemMounter().format('/dev/nvme0n1', 'ext4')

    @patch('homevault.storage.release.subprocess.run')
    def test_format_tool_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError()

        with pytest.raises(FormatFailed, match='mkfs.btrfs not found'):
            SystemMounter().format('/dev/nvme0n1', 'btrfs')

    @patch('homevault.storage.release.os.path.ismount', return_value=True)
    @patch('homevault.storage.release.subprocess.run')
    def test_mount(self, mock_run, mock_ismount, tmp_path):
        target = tmp_path / 'mnt' / 'nvme'

        SystemMounter().mount('/dev/nvme0n1', str(target), 'ext4', 'defaults,noatime')

        assert target.is_dir()
        assert mock_run.call_args[0][0] == [
            'mount', '-t', 'ext4', '-o', 'defaults,noatime', '/dev/nvme0n1', str(target)
        ]

    @patch('homevault.storage.release.os.path.ismount', return_value=False)
    @patch('homevault.storage.release.subprocess.run')
    def test_mount_not_in_place(self, mock_run, mock_ismount, tmp_path):
        """Test a mount that did not take effect is reported."""
        with pytest.raises(MountFailed, match='not a mount point'):
            SystemMounter().mount('/dev/nvme0n1', str(tmp_path), 'ext4', 'defaults')

    @patch('homevault.storage.release.subprocess.run')
    def test_mount_failure(self, mock_run, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(32, 'mount', stderr='wrong fs type, bad option')

        with pytest.raises(MountFailed, match='wrong fs type'):
            SystemMounter().mount('/dev/nvme0n1', str(tmp_path), 'ext4', 'defaults')

    @patch('homevault.storage.release.subprocess.run')
    def test_unmount_returns_status(self, mock_run):
        mounter = SystemMounter()

        assert mounter.unmount('/mnt/nvme') is True
        assert mock_run.call_args[0][0] == ['umount', '/mnt/nvme']

        mock_run.side_effect = subprocess.CalledProcessError(32, 'umount', stderr='target is busy')
        assert mounter.unmount('/mnt/nvme', lazy=True) is False
        assert mock_run.call_args[0][0] == ['umount', '-l', '/mnt/nvme']

    @patch('homevault.storage.release.psutil.disk_partitions')
    def test_source_at(self, mock_partitions):
        mock_partitions.return_value = [
            MagicMock(device='/dev/sda1', mountpoint='/'),
            MagicMock(device='/dev/nvme0n1', mountpoint='/mnt/nvme'),
        ]

        mounter = SystemMounter()
        assert mounter.source_at('/mnt/nvme/') == '/dev/nvme0n1'
        assert mounter.source_at('/media/usb') is None


class TestPsutilProcessReleaser:
    """Test process termination with psutil mocked."""

    def _proc(self, pid, files=(), cwd='/'):
        proc = MagicMock()
        proc.pid = pid
        proc.info = {'pid': pid, 'name': f'proc{pid}'}
        proc.open_files.return_value = [MagicMock(path=f) for f in files]
        proc.cwd.return_value = cwd
        return proc

    @patch('homevault.storage.release.psutil.wait_procs')
    @patch('homevault.storage.release.psutil.process_iter')
    def test_terminates_holders_only(self, mock_iter, mock_wait):
        holder = self._proc(101, files=['/mnt/nvme/immich/upload/a.jpg'])
        cwd_holder = self._proc(102, cwd='/mnt/nvme')
        bystander = self._proc(103, files=['/mnt/nvme2/file'], cwd='/home/user')
        mock_iter.return_value = [holder, cwd_holder, bystander]
        mock_wait.return_value = ([holder, cwd_holder], [])

        count = PsutilProcessReleaser(timeout=0.1).force_release('/mnt/nvme')

        assert count == 2
        holder.terminate.assert_called_once()
        cwd_holder.terminate.assert_called_once()
        bystander.terminate.assert_not_called()

    @patch('homevault.storage.release.psutil.wait_procs')
    @patch('homevault.storage.release.psutil.process_iter')
    def test_kills_lingering(self, mock_iter, mock_wait):
        holder = self._proc(101, cwd='/mnt/nvme/media')
        mock_iter.return_value = [holder]
        mock_wait.return_value = ([], [holder])

        PsutilProcessReleaser(timeout=0.1).force_release('/mnt/nvme')

        holder.kill.assert_called_once()

    @patch('homevault.storage.release.psutil.process_iter')
    def test_skips_inaccessible_processes(self, mock_iter):
        denied = self._proc(101)
        denied.open_files.side_effect = psutil.AccessDenied(101)
        mock_iter.return_value = [denied]

        assert PsutilProcessReleaser().force_release('/mnt/nvme') == 0
