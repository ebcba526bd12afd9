"""
Provisioning workflow.

1. Resolve the data device
2. Drive it through the mount/format guard
3. Create the namespace layout and apply ownership
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from homevault.config import Settings
from .decisions import DecisionProvider
from .devices import BlockDevice, DeviceInventory, LsblkInventory, resolve_device
from .guard import GuardOutcome, GuardState, MountGuard
from .layout import LayoutReport, OwnershipPolicy, provision_layout
from .mount_table import FstabMountTable
from .release import Mounter, ProcessReleaser, PsutilProcessReleaser, SystemMounter

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    state: GuardState
    device: BlockDevice
    outcome: GuardOutcome
    mount_path: Optional[Path] = None
    layout: Optional[LayoutReport] = None


class Provisioner:
    """
    Brings the data device to a mounted, laid-out state.
    """

    def __init__(
        self,
        settings: Settings,
        decisions: DecisionProvider,
        inventory: Optional[DeviceInventory] = None,
        mounter: Optional[Mounter] = None,
        releaser: Optional[ProcessReleaser] = None,
        mount_table: Optional[FstabMountTable] = None,
    ):
        self.settings = settings
        self.decisions = decisions
        self.inventory = inventory or LsblkInventory()
        self.mounter = mounter or SystemMounter()
        self.releaser = releaser or PsutilProcessReleaser()
        self.mount_table = mount_table or FstabMountTable(settings.fstab_path)

    def provision(self, device_class: Optional[str] = None) -> ProvisionResult:
        """
        Provision the device of the given class.

        Args:
            device_class: Device class filter (defaults to the configured class)

        Returns:
            ProvisionResult; mount_path is None when the operator skipped

        Raises:
            StorageError subclasses on fatal failures
        """
        device_class = device_class or self.settings.device_class
        device = resolve_device(self.inventory, device_class)
        logger.info("Found %s device: %s", device_class, device.path)

        guard = MountGuard(
            target=self.settings.mount_root,
            mounter=self.mounter,
            releaser=self.releaser,
            mount_table=self.mount_table,
            decisions=self.decisions,
            fs_type=self.settings.fs_type,
            mount_options=self.settings.mount_options,
            decision_rounds=self.settings.decision_rounds,
        )
        outcome = guard.run(device)

        if outcome.state is not GuardState.PROVISIONED:
            return ProvisionResult(state=outcome.state, device=device, outcome=outcome)

        policy = OwnershipPolicy(
            uid=self.settings.owner_uid,
            gid=self.settings.owner_gid,
            dir_mode=self.settings.dir_mode,
            file_mode=self.settings.file_mode,
        )
        layout = provision_layout(outcome.mount_path, self.settings.namespace_schema, policy)

        return ProvisionResult(
            state=outcome.state,
            device=device,
            outcome=outcome,
            mount_path=outcome.mount_path,
            layout=layout,
        )
