"""Node-side controller that carries out ZFS backups.

A ZFSBackup is created with status Init for a node. The controller on that
node snapshots the volume and sends the data to the backup destination, then
records Done or Failed. Deleting a backup destroys its snapshot and removes
the finalizer. A snapshot exists as long as its backup does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from zfspv.controller import (
    Controller,
    DeletedFinalStateUnknown,
    ObjectMeta,
    ObjectStore,
    WorkQueue,
)

logger = logging.getLogger(__name__)


class BackupStatus(str, Enum):
    """Progress of a backup."""

    EMPTY = ""
    INIT = "Init"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class BackupSpec:
    """What to back up, where to, and which node does it."""

    volume_name: str
    owner_node_id: str
    snap_name: str
    prev_snap_name: str = ""
    backup_dest: str = ""


@dataclass
class ZFSBackup:
    """A request to back up one volume snapshot."""

    metadata: ObjectMeta
    spec: BackupSpec
    status: BackupStatus = BackupStatus.EMPTY

    @property
    def name(self) -> str:
        return self.metadata.name


class BackupOperations(Protocol):
    """The storage and API actions the backup controller drives."""

    def create_backup(self, bkp: ZFSBackup) -> None:
        """Snapshot the volume and send it to the backup destination."""

    def destroy_backup(self, bkp: ZFSBackup) -> None:
        """Destroy the snapshot taken for the backup."""

    def remove_finalizer(self, bkp: ZFSBackup) -> None:
        """Remove the driver's finalizer from the backup."""

    def update_backup_info(self, bkp: ZFSBackup, status: BackupStatus) -> None:
        """Record the backup's new status."""


class BackupController(Controller):
    """Reconciles ZFSBackup objects owned by this node."""

    resource_name = "zfs backup"

    def __init__(
        self,
        store: ObjectStore,
        ops: BackupOperations,
        node_id: str,
        queue: WorkQueue | None = None,
        has_synced=None,
    ) -> None:
        super().__init__(store, queue if queue is not None else WorkQueue("Bkp"), has_synced)
        self.ops = ops
        self.node_id = node_id

    def is_deletion_candidate(self, bkp: ZFSBackup) -> bool:
        """Return True if the backup is marked for deletion."""
        return bkp.metadata.deletion_timestamp is not None

    def sync_handler(self, key: str) -> None:
        """Reconcile the backup named by ``key``; a missing backup is ignored."""
        super().sync_handler(key)

    def sync_object(self, obj: Any) -> None:
        self.sync_backup(obj)

    def sync_backup(self, bkp: ZFSBackup) -> None:
        """Destroy a deleted backup, or carry out one still in Init."""
        if self.is_deletion_candidate(bkp):
            self.ops.destroy_backup(bkp)
            self.ops.remove_finalizer(bkp)
            return
        if bkp.status != BackupStatus.INIT:
            return
        spec = bkp.spec
        try:
            self.ops.create_backup(bkp)
        except Exception as err:  # the failure is recorded on the object
            logger.error(
                "backup %s failed %s@%s err %s", bkp.name, spec.volume_name, spec.snap_name, err
            )
            self.ops.update_backup_info(bkp, BackupStatus.FAILED)
            return
        logger.info(
            "backup %s done %s@%s prevsnap [%s]",
            bkp.name,
            spec.volume_name,
            spec.snap_name,
            spec.prev_snap_name,
        )
        self.ops.update_backup_info(bkp, BackupStatus.DONE)

    def _owned(self, bkp: ZFSBackup) -> bool:
        return bkp.spec.owner_node_id == self.node_id

    def add_backup(self, obj: Any) -> None:
        """Handle a newly seen backup."""
        if not isinstance(obj, ZFSBackup):
            logger.error("Couldn't get backup object %r", obj)
            return
        if not self._owned(obj):
            return
        logger.info("Got add event for Bkp %s snap %s@%s", obj.name, obj.spec.volume_name, obj.spec.snap_name)
        self.enqueue(obj)

    def update_backup(self, old_obj: Any, new_obj: Any) -> None:
        """Handle a changed backup; only deletions need work."""
        if not isinstance(new_obj, ZFSBackup):
            logger.error("Couldn't get bkp object %r", new_obj)
            return
        if not self._owned(new_obj):
            return
        if self.is_deletion_candidate(new_obj):
            logger.info(
                "Got update event for Bkp %s snap %s@%s",
                new_obj.name,
                new_obj.spec.volume_name,
                new_obj.spec.snap_name,
            )
            self.enqueue(new_obj)

    def delete_backup(self, obj: Any) -> None:
        """Handle a deleted backup, unwrapping a tombstone if needed."""
        bkp = obj
        if not isinstance(bkp, ZFSBackup):
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("Couldn't get object from tombstone %r", obj)
                return
            bkp = obj.obj
            if not isinstance(bkp, ZFSBackup):
                logger.error("Tombstone contained object that is not a zfsbackup %r", obj)
                return
        if not self._owned(bkp):
            return
        logger.info("Got delete event for Bkp %s snap %s@%s", bkp.name, bkp.spec.volume_name, bkp.spec.snap_name)
        self.enqueue(bkp)