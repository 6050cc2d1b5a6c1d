"""Node-side controller that creates, updates and destroys ZFS volumes.

A ZFSVolume is created for a node. The controller on that node creates the
dataset or zvol, or clones it from a snapshot when one is named. It then
records the volume as Ready or Failed. Once a volume is Ready, later events
only apply property changes. A volume marked for deletion is destroyed
only after every finalizer other than the driver's own has been removed.
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
STATE_FAILED = "Failed"
STATE_PENDING = "Pending"


@dataclass
class VolumeSpec:
    """Desired properties of a volume and the node that owns it."""

    owner_node_id: str
    pool_name: str = ""
    snap_name: str = ""
    capacity: str = ""
    fs_type: str = ""
    volume_type: str = ""
    compression: str = ""
    dedup: str = ""
    record_size: str = ""
    vol_block_size: str = ""


@dataclass
class VolumeStatus:
    """Observed state of a volume."""

    state: str = ""


@dataclass
class ZFSVolume:
    """A ZFS dataset or zvol provisioned on one node."""

    metadata: ObjectMeta
    spec: VolumeSpec
    status: VolumeStatus = field(default_factory=VolumeStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


class VolumeOperations(Protocol):
    """The storage and API actions the volume controller drives."""

    def get_user_finalizers(self, finalizers: list[str]) -> list[str]:
        """Return the finalizers that are not the driver's own."""

    def is_volume_ready(self, zv: ZFSVolume) -> bool:
        """Return True if the volume has been created and is ready."""

    def property_changed(self, old_zv: ZFSVolume | None, new_zv: ZFSVolume) -> bool:
        """Return True if a settable property differs between the two."""

    def set_volume_prop(self, zv: ZFSVolume) -> None:
        """Apply the volume's properties on the node."""

    def create_volume(self, zv: ZFSVolume) -> None:
        """Create the dataset or zvol."""

    def create_clone(self, zv: ZFSVolume) -> None:
        """Create the volume as a clone of its snapshot."""

    def destroy_volume(self, zv: ZFSVolume) -> None:
        """Destroy the dataset or zvol."""

    def remove_volume_finalizer(self, zv: ZFSVolume) -> None:
        """Remove the driver's finalizer from the volume."""

    def update_zvol_info(self, zv: ZFSVolume, state: str) -> None:
        """Record the volume's new state."""


class VolumeFinalizersPendingError(RuntimeError):
    """Raised when a volume cannot be destroyed while other finalizers remain."""

    def __init__(self, finalizers: list[str]) -> None:
        super().__init__(
            f"volume: can not destroy, waiting for finalizers to be removed {finalizers}"
        )
        self.finalizers = list(finalizers)


class VolumeController(Controller):
    """Reconciles ZFSVolume objects owned by this node."""

    resource_name = "zfsvolume"

    def __init__(
        self,
        store: ObjectStore,
        ops: VolumeOperations,
        node_id: str,
        queue: WorkQueue | None = None,
        has_synced=None,
    ) -> None:
        super().__init__(store, queue if queue is not None else WorkQueue("ZV"), has_synced)
        self.ops = ops
        self.node_id = node_id

    def is_deletion_candidate(self, zv: ZFSVolume) -> bool:
        """Return True if the volume is marked for deletion."""
        return zv.metadata.deletion_timestamp is not None

    def sync_handler(self, key: str) -> None:
        """Reconcile the volume named by ``key``; a missing volume is ignored."""
        super().sync_handler(key)

    def sync_object(self, obj: Any) -> None:
        self.sync_volume(obj)

    def sync_volume(self, zv: ZFSVolume) -> None:
        """Destroy, update or create a volume as its state requires.

        Raises VolumeFinalizersPendingError if a deleted volume still carries
        finalizers other than the driver's. A failed create is recorded as
        Failed on the volume rather than raised.
        """
        if self.is_deletion_candidate(zv):
            user_finalizers = self.ops.get_user_finalizers(zv.metadata.finalizers)
            if user_finalizers:
                raise VolumeFinalizersPendingError(user_finalizers)
            self.ops.destroy_volume(zv)
            self.ops.remove_volume_finalizer(zv)
            return
        if self.ops.is_volume_ready(zv):
            self.ops.set_volume_prop(zv)
            return
        create = self.ops.create_clone if zv.spec.snap_name else self.ops.create_volume
        try:
            create(zv)
        except Exception as err:  # the failure is recorded on the object
            logger.error("volume %s/%s creation failed: %s", zv.spec.pool_name, zv.name, err)
            self.ops.update_zvol_info(zv, STATE_FAILED)
            return
        self.ops.update_zvol_info(zv, STATE_READY)

    def _owned(self, zv: ZFSVolume) -> bool:
        return zv.spec.owner_node_id == self.node_id

    def add_volume(self, obj: Any) -> None:
        """Handle a newly seen volume."""
        if not isinstance(obj, ZFSVolume):
            logger.error("Couldn't get zv object %r", obj)
            return
        if not self._owned(obj):
            return
        logger.info("Got add event for ZV %s/%s", obj.spec.pool_name, obj.name)
        self.enqueue(obj)

    def update_volume(self, old_obj: Any, new_obj: Any) -> None:
        """Handle a changed volume: property changes, deletions and pending volumes."""
        if not isinstance(new_obj, ZFSVolume):
            logger.error("Couldn't get zv object %r", new_obj)
            return
        if not self._owned(new_obj):
            return
        old_zv = old_obj if isinstance(old_obj, ZFSVolume) else None
        if (
            self.ops.property_changed(old_zv, new_obj)
            or self.is_deletion_candidate(new_obj)
            or new_obj.status.state == STATE_PENDING
        ):
            logger.info("Got update event for ZV %s/%s", new_obj.spec.pool_name, new_obj.name)
            self.enqueue(new_obj)

    def delete_volume(self, obj: Any) -> None:
        """Handle a deleted volume, unwrapping a tombstone if needed."""
        zv = obj
        if not isinstance(zv, ZFSVolume):
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("Couldn't get object from tombstone %r", obj)
                return
            zv = obj.obj
            if not isinstance(zv, ZFSVolume):
                logger.error("Tombstone contained object that is not a zfsvolume %r", obj)
                return
        if not self._owned(zv):
            return
        logger.info("Got delete event for ZV %s/%s", zv.spec.pool_name, zv.name)
        self.enqueue(zv)