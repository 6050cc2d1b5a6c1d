from datetime import datetime, timezone

import pytest

from zfspv.backup import BackupController, BackupSpec, BackupStatus, ZFSBackup
from zfspv.controller import DeletedFinalStateUnknown, ObjectMeta, ObjectStore

NODE = "node-1"


class FakeOps:
    def __init__(self, fail_create=False, fail_destroy=False, fail_update=False):
        self.calls = []
        self.fail_create = fail_create
        self.fail_destroy = fail_destroy
        self.fail_update = fail_update

    def create_backup(self, bkp):
        self.calls.append(("create", bkp.name))
        if self.fail_create:
            raise RuntimeError("send failed")

    def destroy_backup(self, bkp):
        self.calls.append(("destroy", bkp.name))
        if self.fail_destroy:
            raise RuntimeError("destroy failed")

    def remove_finalizer(self, bkp):
        self.calls.append(("remove", bkp.name))

    def update_backup_info(self, bkp, status):
        self.calls.append(("update", bkp.name, status))
        if self.fail_update:
            raise RuntimeError("update failed")


def make_backup(name="bkp1", node=NODE, status=BackupStatus.INIT, deleted=False):
    stamp = datetime(2020, 1, 1, tzinfo=timezone.utc) if deleted else None
    return ZFSBackup(
        metadata=ObjectMeta(name=name, namespace="openebs", deletion_timestamp=stamp),
        spec=BackupSpec(volume_name="pvc-1", owner_node_id=node, snap_name="snap-1"),
        status=status,
    )


def make_controller(ops=None, backups=()):
    return BackupController(ObjectStore(backups), ops or FakeOps(), node_id=NODE)


def test_init_backup_done():
    ops = FakeOps()
    make_controller(ops).sync_backup(make_backup())
    assert ops.calls == [("create", "bkp1"), ("update", "bkp1", BackupStatus.DONE)]


def test_init_backup_failed_is_recorded():
    ops = FakeOps(fail_create=True)
    make_controller(ops).sync_backup(make_backup())
    assert ops.calls == [("create", "bkp1"), ("update", "bkp1", BackupStatus.FAILED)]


def test_status_update_failure_propagates():
    ops = FakeOps(fail_create=True, fail_update=True)
    with pytest.raises(RuntimeError):
        make_controller(ops).sync_backup(make_backup())


@pytest.mark.parametrize("status", [BackupStatus.DONE, BackupStatus.FAILED, BackupStatus.EMPTY])
def test_non_init_backup_is_left_alone(status):
    ops = FakeOps()
    make_controller(ops).sync_backup(make_backup(status=status))
    assert ops.calls == []


def test_deleted_backup_is_destroyed():
    ops = FakeOps()
    make_controller(ops).sync_backup(make_backup(deleted=True))
    assert ops.calls == [("destroy", "bkp1"), ("remove", "bkp1")]


def test_destroy_failure_keeps_finalizer():
    ops = FakeOps(fail_destroy=True)
    with pytest.raises(RuntimeError):
        make_controller(ops).sync_backup(make_backup(deleted=True))
    assert ops.calls == [("destroy", "bkp1")]


def test_is_deletion_candidate():
    controller = make_controller()
    assert controller.is_deletion_candidate(make_backup(deleted=True)) is True
    assert controller.is_deletion_candidate(make_backup()) is False


def test_add_enqueues_owned_backup():
    controller = make_controller()
    controller.add_backup(make_backup())
    assert controller.queue.get(timeout=1) == ("openebs/bkp1", False)


@pytest.mark.parametrize("obj", [make_backup(node="node-2"), object()])
def test_add_ignores_foreign_or_wrong_objects(obj):
    controller = make_controller()
    controller.add_backup(obj)
    assert len(controller.queue) == 0


@pytest.mark.parametrize(
    "new,expected",
    [
        (make_backup(), 0),
        (make_backup(deleted=True), 1),
        (make_backup(node="node-2", deleted=True), 0),
        (object(), 0),
    ],
)
def test_update_enqueues_only_deletions(new, expected):
    controller = make_controller()
    controller.update_backup(make_backup(), new)
    assert len(controller.queue) == expected


@pytest.mark.parametrize(
    "obj,expected",
    [
        (make_backup(), 1),
        (DeletedFinalStateUnknown("openebs/bkp1", make_backup()), 1),
        (DeletedFinalStateUnknown("openebs/bkp1", object()), 0),
        (DeletedFinalStateUnknown("openebs/bkp1", make_backup(node="node-2")), 0),
        (object(), 0),
    ],
)
def test_delete_handler(obj, expected):
    controller = make_controller()
    controller.delete_backup(obj)
    assert len(controller.queue) == expected


def test_sync_handler_uses_store():
    ops = FakeOps()
    controller = make_controller(ops, [make_backup()])
    controller.sync_handler("openebs/bkp1")
    assert ops.calls == [("create", "bkp1"), ("update", "bkp1", BackupStatus.DONE)]


def test_sync_handler_ignores_missing_backup():
    ops = FakeOps()
    make_controller(ops).sync_handler("openebs/gone")
    assert ops.calls == []


def test_work_item_failure_is_requeued():
    ops = FakeOps(fail_destroy=True)
    backup = make_backup(deleted=True)
    controller = make_controller(ops, [backup])
    controller.delete_backup(backup)
    assert controller.process_next_work_item() is True
    assert controller.queue.num_requeues("openebs/bkp1") == 1


def test_work_item_success_is_forgotten():
    ops = FakeOps()
    backup = make_backup()
    controller = make_controller(ops, [backup])
    controller.add_backup(backup)
    assert controller.process_next_work_item() is True
    assert controller.queue.num_requeues("openebs/bkp1") == 0
    assert ops.calls[-1] == ("update", "bkp1", BackupStatus.DONE)