"""
Mount/format guard.

Brings a block device to a mounted, usable state at the target path without
destroying data by accident:

- a device with no filesystem signature is formatted and mounted directly
- a device that may hold data requires an explicit operator decision
  (format / use-existing / skip); format needs the exact confirmation phrase
- a failed format or mount gets one recovery decision
  (format-again / skip / abort); a second failure is fatal
- the successful mount is persisted once in the mount table
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .decisions import (
    Choice,
    Decision,
    DecisionProvider,
    DecisionRequest,
    INITIAL_CHOICES,
    RECOVERY_CHOICES,
)
from .devices import BlockDevice, MountState
from .errors import ConfirmationRequired, FormatFailed, MountFailed, StorageError
from .mount_table import FstabMountTable, MountRecord
from .release import Mounter, ProcessReleaser, controlled_release

logger = logging.getLogger(__name__)


class GuardState(Enum):
    UNMOUNTED_NO_FS = 'unmounted-no-fs'
    UNMOUNTED_HAS_FS = 'unmounted-has-fs'
    MOUNTED_AT_TARGET = 'mounted-at-target'
    MOUNTED_ELSEWHERE = 'mounted-elsewhere'
    DECISION = 'decision'
    PROVISIONED = 'provisioned'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass
class GuardOutcome:
    """Result of one guard run."""
    state: GuardState
    device: BlockDevice
    mount_path: Optional[Path] = None
    formatted: bool = False
    record_added: bool = False
    history: List[GuardState] = field(default_factory=list)


class MountGuard:
    """
    State machine driving one device to PROVISIONED, SKIPPED or FAILED.
    """

    def __init__(
        self,
        target,
        mounter: Mounter,
        releaser: ProcessReleaser,
        mount_table: FstabMountTable,
        decisions: DecisionProvider,
        fs_type: str = 'ext4',
        mount_options: str = 'defaults',
        decision_rounds: int = 3,
    ):
        self.target = Path(target)
        self.mounter = mounter
        self.releaser = releaser
        self.mount_table = mount_table
        self.decisions = decisions
        self.fs_type = fs_type
        self.mount_options = mount_options
        self.decision_rounds = decision_rounds

        self.state: Optional[GuardState] = None
        self.history: List[GuardState] = []
        self._formatted = False

    @staticmethod
    def confirmation_phrase(device: BlockDevice) -> str:
        """Exact phrase an operator must supply to format a device."""
        return f"FORMAT {device.path}"

    def run(self, device: BlockDevice) -> GuardOutcome:
        """
        Drive the device to a terminal state.

        Args:
            device: Device chosen by the resolver

        Returns:
            GuardOutcome in state PROVISIONED or SKIPPED

        Raises:
            ConfirmationRequired: If no acceptable decision was given
            FormatFailed / MountFailed: On abort or a second failure
            Unmountable: If a mount point cannot be released
        """
        self.history = []
        self._formatted = False

        try:
            return self._run(device)
        except StorageError:
            self._enter(GuardState.FAILED)
            raise

    def _run(self, device: BlockDevice) -> GuardOutcome:
        initial = self._classify(device)
        self._enter(initial)

        if initial is GuardState.MOUNTED_AT_TARGET and self._recorded(device):
            logger.info("%s is already provisioned at %s", device.path, self.target)
            return self._provisioned(device, device.mount_source, self._existing_fstype(device))

        if initial is GuardState.UNMOUNTED_NO_FS:
            logger.info("%s has no filesystem; formatting as %s", device.path, self.fs_type)
            return self._attempt(device, lambda: self._format_and_mount(device))

        decision = self._decide(
            device,
            f"{device.path} already contains a filesystem and may hold data",
            INITIAL_CHOICES,
        )

        if decision.choice is Choice.SKIP:
            return self._skip(device)

        if decision.choice is Choice.USE_EXISTING:
            logger.info("Using the existing filesystem on %s", device.path)
            return self._attempt(device, lambda: self._use_existing(device, initial))

        logger.warning("Formatting %s - ALL DATA WILL BE LOST", device.path)
        return self._attempt(device, lambda: self._format_and_mount(device, release=True))

    def _classify(self, device: BlockDevice) -> GuardState:
        state = device.mount_state(self.target)
        if state is MountState.MOUNTED_AT_TARGET:
            return GuardState.MOUNTED_AT_TARGET
        if state is MountState.MOUNTED_ELSEWHERE:
            return GuardState.MOUNTED_ELSEWHERE
        if device.has_signature:
            return GuardState.UNMOUNTED_HAS_FS
        return GuardState.UNMOUNTED_NO_FS

    def _enter(self, state: GuardState):
        self.state = state
        self.history.append(state)
        logger.debug("Guard state: %s", state.value)

    def _recorded(self, device: BlockDevice) -> bool:
        record = self.mount_table.find(self.target)
        if record is None:
            return False
        known = {device.path, device.mount_source}
        known.update(p.path for p in device.partitions)
        return record.device in known

    def _existing_fstype(self, device: BlockDevice) -> str:
        if device.fstype:
            return device.fstype
        for partition in device.partitions:
            if partition.path == device.mount_source and partition.fstype:
                return partition.fstype
        return self.fs_type

    def _decide(self, device: BlockDevice, reason: str, options) -> Decision:
        """
        Ask for a decision until an acceptable one arrives.

        A destructive choice without the exact confirmation phrase is
        discarded and the question asked again.
        """
        expected = self.confirmation_phrase(device)
        request = DecisionRequest(
            device=device.path,
            reason=reason,
            options=tuple(options),
            confirmation_hint=expected,
        )

        for _ in range(self.decision_rounds):
            self._enter(GuardState.DECISION)
            decision = self.decisions.decide(request)

            if decision.choice not in request.options:
                logger.warning("Invalid option %s; expected one of %s",
                               decision.choice.value, [c.value for c in request.options])
                continue

            if decision.choice.destructive and decision.confirmation != expected:
                logger.warning("Confirmation phrase did not match; format cancelled")
                continue

            return decision

        raise ConfirmationRequired(
            f"No confirmed decision for {device.path} after {self.decision_rounds} attempts"
        )

    def _attempt(self, device: BlockDevice, action) -> GuardOutcome:
        """Run a format/mount action, offering one recovery decision on failure."""
        try:
            source, fs_type = action()
        except (FormatFailed, MountFailed) as e:
            logger.error("%s", e)
            return self._recover(device, e)
        return self._provisioned(device, source, fs_type)

    def _recover(self, device: BlockDevice, error: StorageError) -> GuardOutcome:
        decision = self._decide(
            device,
            f"{error}. The device may have an incompatible filesystem or damaged medium",
            RECOVERY_CHOICES,
        )

        if decision.choice is Choice.ABORT:
            logger.error("Aborted by operator; fix %s manually and run again", device.path)
            raise error

        if decision.choice is Choice.SKIP:
            return self._skip(device)

        logger.warning("Formatting %s again - ALL DATA WILL BE LOST", device.path)
        source, fs_type = self._format_and_mount(device, release=True)
        return self._provisioned(device, source, fs_type)

    def _format_and_mount(self, device: BlockDevice, release: bool = False):
        if release:
            self._release_device(device)
        self.mounter.format(device.path, self.fs_type)
        self._formatted = True
        logger.info("%s formatted with %s", device.path, self.fs_type)
        self._mount(device.path, self.fs_type)
        return device.path, self.fs_type

    def _use_existing(self, device: BlockDevice, initial: GuardState):
        fs_type = self._existing_fstype(device)
        if device.ambiguous_source:
            logger.warning(
                "%s has several formatted partitions (%s); trying the whole disk. "
                "Mount the right partition by hand rather than formatting",
                device.path, ', '.join(p.path for p in device.formatted_partitions)
            )
        if initial is GuardState.MOUNTED_AT_TARGET:
            return device.mount_source, fs_type
        if initial is GuardState.MOUNTED_ELSEWHERE:
            self._release_device(device)
        self._mount(device.mount_source, fs_type)
        return device.mount_source, fs_type

    def _release_device(self, device: BlockDevice):
        for point in device.all_mountpoints:
            controlled_release(point, self.mounter, self.releaser)

    def _mount(self, source: str, fs_type: str):
        target = str(self.target)
        if self.mounter.is_mounted(target):
            current = self.mounter.source_at(target)
            if current == source:
                return
            logger.warning("%s is occupied by %s; releasing it first", target, current)
            controlled_release(target, self.mounter, self.releaser)

        logger.info("Mounting %s at %s", source, target)
        self.mounter.mount(source, target, fs_type, self.mount_options)

    def _skip(self, device: BlockDevice) -> GuardOutcome:
        target = str(self.target)
        if self.mounter.is_mounted(target):
            current = self.mounter.source_at(target)
            known = {device.path, device.mount_source}
            known.update(p.path for p in device.partitions)
            if current in known:
                controlled_release(target, self.mounter, self.releaser)

        logger.warning("Skipping storage configuration for %s", device.path)
        self._enter(GuardState.SKIPPED)
        return GuardOutcome(
            state=GuardState.SKIPPED,
            device=device,
            formatted=self._formatted,
            history=list(self.history),
        )

    def _provisioned(self, device: BlockDevice, source: str, fs_type: str) -> GuardOutcome:
        record = MountRecord(
            device=source,
            mount_path=str(self.target),
            fs_type=fs_type,
            options=self.mount_options,
        )
        added = self.mount_table.ensure(record)

        self._enter(GuardState.PROVISIONED)
        logger.info("%s mounted at %s", source, self.target)
        return GuardOutcome(
            state=GuardState.PROVISIONED,
            device=device,
            mount_path=self.target,
            formatted=self._formatted,
            record_added=added,
            history=list(self.history),
        )
