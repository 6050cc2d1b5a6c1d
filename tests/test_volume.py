from datetime import datetime, timezone

import pytest

from zfspv.controller import DeletedFinalStateUnknown, ObjectMeta, ObjectStore
from zfspv.volume import (
    STATE_FAILED,
    STATE_PENDING,
    STATE_READY,
    VolumeController,
    VolumeFinalizersPendingError,
    VolumeSpec,
    VolumeStatus,
    ZFSVolume,
)

NODE = "node-1"
NS = "openebs"
DRIVER_FINALIZER = "zfs.openebs.io/finalizer"


class FakeOps:
    def __init__(self, ready=False, changed=False, fail_create=False):
        self.ready = ready
        self.changed = changed
        self.fail_create = fail_create
        self.calls = []

    def get_user_finalizers(self, finalizers):
        return [f for f in finalizers if f != DRIVER_FINALIZER]

    def is_volume_ready(self, zv):
        return self.ready

    def property_changed(self, old_zv, new_zv):
        return self.changed

    def set_volume_prop(self, zv):
        self.calls.append(("set_prop", zv.name))

    def create_volume(self, zv):
        self.calls.append(("create", zv.name))
        if self.fail_create:
            raise OSError("pool is full")

    def create_clone(self, zv):
        self.calls.append(("clone", zv.name))
        if self.fail_create:
            raise OSError("no such snapshot")

    def destroy_volume(self, zv):
        self.calls.append(("destroy", zv.name))

    def remove_volume_finalizer(self, zv):
        self.calls.append(("remove_finalizer", zv.name))

    def update_zvol_info(self, zv, state):
        self.calls.append(("update", zv.name, state))


def make_volume(name="pvc-1", owner=NODE, snap_name="", deleted=False, finalizers=None, state=""):
    meta = ObjectMeta(
        name=name,
        namespace=NS,
        deletion_timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) if deleted else None,
        finalizers=list(finalizers or []),
    )
    spec = VolumeSpec(owner_node_id=owner, pool_name="zfspv-pool", snap_name=snap_name)
    return ZFSVolume(metadata=meta, spec=spec, status=VolumeStatus(state=state))


def make_controller(ops, *volumes):
    return VolumeController(ObjectStore(volumes), ops, NODE)


def test_create_new_volume_marks_ready():
    ops = FakeOps()
    ctrl = make_controller(ops)
    ctrl.sync_volume(make_volume())
    assert ops.calls == [("create", "pvc-1"), ("update", "pvc-1", STATE_READY)]


def test_clone_when_snapshot_named():
    ops = FakeOps()
    ctrl = make_controller(ops)
    ctrl.sync_volume(make_volume(snap_name="snap-1"))
    assert ops.calls == [("clone", "pvc-1"), ("update", "pvc-1", STATE_READY)]


def test_failed_create_marks_failed_without_raising():
    ops = FakeOps(fail_create=True)
    ctrl = make_controller(ops)
    ctrl.sync_volume(make_volume())
    assert ops.calls[-1] == ("update", "pvc-1", STATE_FAILED)


def test_ready_volume_only_sets_properties():
    ops = FakeOps(ready=True)
    ctrl = make_controller(ops)
    ctrl.sync_volume(make_volume(state=STATE_READY))
    assert ops.calls == [("set_prop", "pvc-1")]


def test_deleted_volume_destroyed_then_finalizer_removed():
    ops = FakeOps()
    ctrl = make_controller(ops)
    ctrl.sync_volume(make_volume(deleted=True, finalizers=[DRIVER_FINALIZER]))
    assert ops.calls == [("destroy", "pvc-1"), ("remove_finalizer", "pvc-1")]


def test_deleted_volume_with_user_finalizers_raises():
    ops = FakeOps()
    ctrl = make_controller(ops)
    zv = make_volume(deleted=True, finalizers=[DRIVER_FINALIZER, "user/keep"])
    with pytest.raises(VolumeFinalizersPendingError) as info:
        ctrl.sync_volume(zv)
    assert info.value.finalizers == ["user/keep"]
    assert "waiting for finalizers to be removed" in str(info.value)
    assert ops.calls == []


def test_is_deletion_candidate():
    ctrl = make_controller(FakeOps())
    assert ctrl.is_deletion_candidate(make_volume(deleted=True)) is True
    assert ctrl.is_deletion_candidate(make_volume()) is False


def test_sync_handler_reconciles_copy_from_store():
    ops = FakeOps()
    zv = make_volume()
    ctrl = make_controller(ops, zv)
    ctrl.sync_handler(f"{NS}/pvc-1")
    assert ops.calls == [("create", "pvc-1"), ("update", "pvc-1", STATE_READY)]


def test_sync_handler_ignores_missing_and_invalid_keys():
    ops = FakeOps()
    ctrl = make_controller(ops)
    ctrl.sync_handler(f"{NS}/absent")
    ctrl.sync_handler("a/b/c")
    assert ops.calls == []


def test_add_volume_enqueues_only_owned():
    ctrl = make_controller(FakeOps())
    ctrl.add_volume(make_volume(name="mine"))
    ctrl.add_volume(make_volume(name="theirs", owner="node-2"))
    ctrl.add_volume("not a volume")
    assert len(ctrl.queue) == 1
    item, shutdown = ctrl.queue.get(timeout=1)
    assert (item, shutdown) == (f"{NS}/mine", False)


@pytest.mark.parametrize(
    "ops_kwargs, volume_kwargs, expected",
    [
        ({}, {}, 0),
        ({"changed": True}, {}, 1),
        ({}, {"deleted": True}, 1),
        ({}, {"state": STATE_PENDING}, 1),
        ({"changed": True}, {"owner": "node-2"}, 0),
    ],
)
def test_update_volume_enqueue_conditions(ops_kwargs, volume_kwargs, expected):
    ctrl = make_controller(FakeOps(**ops_kwargs))
    ctrl.update_volume(make_volume(), make_volume(**volume_kwargs))
    assert len(ctrl.queue) == expected


def test_update_volume_rejects_non_volume():
    ctrl = make_controller(FakeOps(changed=True))
    ctrl.update_volume(make_volume(), object())
    assert len(ctrl.queue) == 0


def test_delete_volume_unwraps_tombstone():
    ctrl = make_controller(FakeOps())
    zv = make_volume(name="gone")
    ctrl.delete_volume(DeletedFinalStateUnknown(key=f"{NS}/gone", obj=zv))
    ctrl.delete_volume(DeletedFinalStateUnknown(key=f"{NS}/bad", obj="junk"))
    ctrl.delete_volume(42)
    assert len(ctrl.queue) == 1
    item, _ = ctrl.queue.get(timeout=1)
    assert item == f"{NS}/gone"


def test_failed_sync_is_requeued_with_backoff():
    ops = FakeOps()
    zv = make_volume(deleted=True, finalizers=["user/keep"])
    ctrl = make_controller(ops, zv)
    ctrl.enqueue(zv)
    assert ctrl.process_next_work_item() is True
    assert ctrl.queue.num_requeues(f"{NS}/pvc-1") == 1
    ctrl.queue.shut_down()


def test_successful_sync_forgets_item():
    ops = FakeOps()
    zv = make_volume()
    ctrl = make_controller(ops, zv)
    ctrl.enqueue(zv)
    assert ctrl.process_next_work_item() is True
    assert ctrl.queue.num_requeues(f"{NS}/pvc-1") == 0
    assert ("update", "pvc-1", STATE_READY) in ops.calls
    ctrl.queue.shut_down()
    assert ctrl.process_next_work_item() is False