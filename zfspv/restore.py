"""Node-side controller that carries out ZFS restores.

The restore destination volume is created first. A ZFSRestore is then
created with status Init, naming the destination volume and the server the
data is read from. The controller on the owning node reads the data and
receives it into the volume, then records Done or Failed. A restore whose
status update fails is attempted again from the beginning. A restore whose
status update succeeds is not attempted again.
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


class RestoreStatus(str, Enum):
    """Progress of a restore."""

    EMPTY = ""
    INIT = "Init"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class RestoreSpec:
    """Which volume to restore into, where from, and which node does it."""

    volume_name: str
    owner_node_id: str
    restore_src: str = ""


@dataclass
class ZFSRestore:
    """A request to restore a backup into one volume."""

    metadata: ObjectMeta
    spec: RestoreSpec
    status: RestoreStatus = RestoreStatus.EMPTY

    @property
    def name(self) -> str:
        return self.metadata.name


class RestoreOperations(Protocol):
    """The storage and API actions the restore controller drives."""

    def create_restore(self, rstr: ZFSRestore) -> None:
        """Read the backup data and receive it into the destination volume."""

    def update_restore_info(self, rstr: ZFSRestore, status: RestoreStatus) -> None:
        """Record the restore's new status."""


class RestoreController(Controller):
    """Reconciles ZFSRestore objects owned by this node."""

    resource_name = "zfs restore"

    def __init__(
        self,
        store: ObjectStore,
        ops: RestoreOperations,
        node_id: str,
        queue: WorkQueue | None = None,
        has_synced=None,
    ) -> None:
        super().__init__(store, queue if queue is not None else WorkQueue("Restore"), has_synced)
        self.ops = ops
        self.node_id = node_id

    def is_deletion_candidate(self, rstr: ZFSRestore) -> bool:
        """Return True if the restore is marked for deletion."""
        return rstr.metadata.deletion_timestamp is not None

    def sync_handler(self, key: str) -> None:
        """Reconcile the restore named by ``key``; a missing restore is ignored."""
        super().sync_handler(key)

    def sync_object(self, obj: Any) -> None:
        self.sync_restore(obj)

    def sync_restore(self, rstr: ZFSRestore) -> None:
        """Carry out a restore still in Init unless it is being deleted."""
        if self.is_deletion_candidate(rstr) or rstr.status != RestoreStatus.INIT:
            return
        try:
            self.ops.create_restore(rstr)
        except Exception as err:  # the failure is recorded on the object
            logger.error("restore %s failed %s err %s", rstr.name, rstr.spec.volume_name, err)
            self.ops.update_restore_info(rstr, RestoreStatus.FAILED)
            return
        logger.info("restore %s done %s", rstr.name, rstr.spec.volume_name)
        self.ops.update_restore_info(rstr, RestoreStatus.DONE)

    def _owned(self, rstr: ZFSRestore) -> bool:
        return rstr.spec.owner_node_id == self.node_id

    def add_restore(self, obj: Any) -> None:
        """Handle a newly seen restore."""
        if not isinstance(obj, ZFSRestore):
            logger.error("Couldn't get rstr object %r", obj)
            return
        if not self._owned(obj):
            return
        logger.info("Got add event for Restore %s vol %s", obj.name, obj.spec.volume_name)
        self.enqueue(obj)

    def update_restore(self, old_obj: Any, new_obj: Any) -> None:
        """Handle a changed restore; only deletions need work."""
        if not isinstance(new_obj, ZFSRestore):
            logger.error("Couldn't get rstr object %r", new_obj)
            return
        if not self._owned(new_obj):
            return
        if self.is_deletion_candidate(new_obj):
            logger.info(
                "Got update event for Restore %s vol %s", new_obj.name, new_obj.spec.volume_name
            )
            self.enqueue(new_obj)

    def delete_restore(self, obj: Any) -> None:
        """Handle a deleted restore, unwrapping a tombstone if needed."""
        rstr = obj
        if not isinstance(rstr, ZFSRestore):
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("Couldn't get object from tombstone %r", obj)
                return
            rstr = obj.obj
            if not isinstance(rstr, ZFSRestore):
                logger.error("Tombstone contained object that is not a zfsrestore %r", obj)
                return
        if not self._owned(rstr):
            return
        logger.info("Got delete event for Restore %s", rstr.spec.volume_name)
        self.enqueue(rstr)