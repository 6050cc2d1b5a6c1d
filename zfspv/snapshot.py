"""Node-side controller that creates and destroys ZFS snapshots.

A ZFSSnapshot is created for a node. The controller on that node takes the
snapshot and records it as Ready. Once a snapshot is marked for deletion it
is destroyed, but only after every finalizer other than the driver's own
has been removed. Its own finalizer is then removed as well.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from zfspv.controller import (
    Controller,
    DeletedFinalStateUnknown,
    ObjectMeta,
    ObjectStore,
    WorkQueue,
)

logger = logging.getLogger(__name__)

STATE_READY = "Ready"


@dataclass
class SnapshotSpec:
    """Which pool the snapshot lives in and which node owns it."""

    owner_node_id: str
    pool_name: str = ""


@dataclass
class SnapshotStatus:
    """Observed state of a snapshot; empty until it has been created."""

    state: str = ""


@dataclass
class ZFSSnapshot:
    """A snapshot of one ZFS volume."""

    metadata: ObjectMeta
    spec: SnapshotSpec
    status: SnapshotStatus = field(default_factory=SnapshotStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


class SnapshotOperations(Protocol):
    """The storage and API actions the snapshot controller drives."""

    def get_user_finalizers(self, finalizers: list[str]) -> list[str]:
        """Return the finalizers that are not the driver's own."""

    def create_snapshot(self, snap: ZFSSnapshot) -> None:
        """Take the snapshot on the node."""

    def destroy_snapshot(self, snap: ZFSSnapshot) -> None:
        """Destroy the snapshot on the node."""

    def remove_finalizer(self, snap: ZFSSnapshot) -> None:
        """Remove the driver's finalizer from the snapshot."""

    def update_snap_info(self, snap: ZFSSnapshot) -> None:
        """Record the snapshot as ready."""


class FinalizersPendingError(RuntimeError):
    """Raised when a snapshot cannot be destroyed while other finalizers remain."""

    def __init__(self, finalizers: list[str]) -> None:
        super().__init__(
            f"snapshot: can not destroy, waiting for finalizers to be removed {finalizers}"
        )
        self.finalizers = list(finalizers)


class SnapshotController(Controller):
    """Reconciles ZFSSnapshot objects owned by this node."""

    resource_name = "zfs snapshot"

    def __init__(
        self,
        store: ObjectStore,
        ops: SnapshotOperations,
        node_id: str,
        queue: WorkQueue | None = None,
        has_synced=None,
    ) -> None:
        super().__init__(store, queue if queue is not None else WorkQueue("Snap"), has_synced)
        self.ops = ops
        self.node_id = node_id

    def is_deletion_candidate(self, snap: ZFSSnapshot) -> bool:
        """Return True if the snapshot is marked for deletion."""
        return snap.metadata.deletion_timestamp is not None

    def sync_handler(self, key: str) -> None:
        """Reconcile the snapshot named by ``key``; a missing snapshot is ignored."""
        super().sync_handler(key)

    def sync_object(self, obj: Any) -> None:
        self.sync_snapshot(obj)

    def sync_snapshot(self, snap: ZFSSnapshot) -> None:
        """Destroy a deleted snapshot, or create one that is not yet ready.

        Raises FinalizersPendingError if a deleted snapshot still carries
        finalizers other than the driver's.
        """
        if self.is_deletion_candidate(snap):
            user_finalizers = self.ops.get_user_finalizers(snap.metadata.finalizers)
            if user_finalizers:
                raise FinalizersPendingError(user_finalizers)
            self.ops.destroy_snapshot(snap)
            self.ops.remove_finalizer(snap)
            return
        if snap.status.state != STATE_READY:
            self.ops.create_snapshot(snap)
            self.ops.update_snap_info(snap)

    def _owned(self, snap: ZFSSnapshot) -> bool:
        return snap.spec.owner_node_id == self.node_id

    def add_snapshot(self, obj: Any) -> None:
        """Handle a newly seen snapshot."""
        if not isinstance(obj, ZFSSnapshot):
            logger.error("Couldn't get snap object %r", obj)
            return
        if not self._owned(obj):
            return
        logger.info("Got add event for Snap %s/%s", obj.spec.pool_name, obj.name)
        self.enqueue(obj)

    def update_snapshot(self, old_obj: Any, new_obj: Any) -> None:
        """Handle a changed snapshot; only deletions need work."""
        if not isinstance(new_obj, ZFSSnapshot):
            logger.error("Couldn't get snap object %r", new_obj)
            return
        if not self._owned(new_obj):
            return
        if self.is_deletion_candidate(new_obj):
            logger.info("Got update event for Snap %s/%s", new_obj.spec.pool_name, new_obj.name)
            self.enqueue(new_obj)

    def delete_snapshot(self, obj: Any) -> None:
        """Handle a deleted snapshot, unwrapping a tombstone if needed."""
        snap = obj
        if not isinstance(snap, ZFSSnapshot):
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("Couldn't get object from tombstone %r", obj)
                return
            snap = obj.obj
            if not isinstance(snap, ZFSSnapshot):
                logger.error("Tombstone contained object that is not a zfssnap %r", obj)
                return
        if not self._owned(snap):
            return
        logger.info("Got delete event for Snap %s/%s", snap.spec.pool_name, snap.name)
        self.enqueue(snap)