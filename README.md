# zfspv

Building blocks for a node agent that manages ZFS-backed local persistent
volumes: CSI response builders, build version lookup, and reconciling
controllers for volumes, snapshots, backups, restores and the per-node pool
inventory.

The package uses only the Python standard library and supports Python 3.10
and later.

## Modules

| Module | Purpose |
| --- | --- |
| `zfspv.response` | Fluent builders for CSI responses: `CreateVolumeResponseBuilder`, `DeleteVolumeResponseBuilder`, `ControllerExpandVolumeResponseBuilder`, `CreateSnapshotResponseBuilder`. |
| `zfspv.version` | Version information: `current()`, `get()`, `get_build_meta()`, `get_git_commit()`, `get_version_details()`, `verbose()`. |
| `zfspv.controller` | Shared reconcile machinery: `ObjectStore`, `WorkQueue`, the abstract `Controller`, `meta_namespace_key()`, `split_meta_namespace_key()`, `ObjectMeta`, `DeletedFinalStateUnknown`, `NotFoundError`, `InvalidKeyError`. |
| `zfspv.volume` | `VolumeController` for `ZFSVolume` objects. |
| `zfspv.snapshot` | `SnapshotController` for `ZFSSnapshot` objects. |
| `zfspv.backup` | `BackupController` for `ZFSBackup` objects. |
| `zfspv.restore` | `RestoreController` for `ZFSRestore` objects. |
| `zfspv.zfsnode` | `NodeController` keeps a `ZFSNode` object in step with the node's pools. |

## Building CSI responses

Each builder starts empty, every `with_*` call returns the builder, and
`build()` returns the response dataclass.

```python
from zfspv.response import (
    ControllerExpandVolumeResponseBuilder,
    CreateSnapshotResponseBuilder,
    CreateVolumeResponseBuilder,
    DeleteVolumeResponseBuilder,
)

created = (
    CreateVolumeResponseBuilder()
    .with_name("pvc-1234")
    .with_capacity(5 * 1024**3)
    .with_context({"poolname": "zfspv-pool"})
    .with_topology({"openebs.io/nodeid": "node-a"})
    .build()
)
created.volume.accessible_topology  # [Topology(segments={"openebs.io/nodeid": "node-a"})]

expanded = (
    ControllerExpandVolumeResponseBuilder()
    .with_capacity_bytes(8 * 1024**3)
    .with_node_expansion_required(True)
    .build()
)

snapshot = (
    CreateSnapshotResponseBuilder()
    .with_snapshot_id("pvc-1234@snap-1")
    .with_source_volume_id("pvc-1234")
    .with_size(0)
    .with_creation_time(1_700_000_000, 0)
    .with_ready_to_use(True)
    .build()
)

deleted = DeleteVolumeResponseBuilder().build()
```

`with_topology` sets a single accessible topology; calling it again
replaces it. `with_creation_time` truncates the nanoseconds to a signed
32-bit value.

## Version information

```python
from zfspv import version

version.get()                  # the release version
version.get_build_meta()       # "-" followed by the pre-release marker
version.get_git_commit()       # the full commit hash
version.verbose()              # "<version>-<first 7 characters of the commit>"
version.get_version_details()  # "zfs-" followed by the same
```

The module-level `VERSION`, `VERSION_META` and `GIT_COMMIT` are meant to be
set at build time. When one is empty it is looked up at run time: the
version and build marker from the `VERSION` and `BUILDMETA` files in the
directory named by the `ZFSPV_HOME` environment variable (the filesystem
root if unset), and the commit by running `git rev-parse --verify HEAD`. A
failed lookup is logged and yields an empty string. `verbose()` and
`get_version_details()` raise `ValueError` if the commit is shorter than
seven characters.

## Controllers

Every controller is built from an `ObjectStore` holding the watched
objects, an operations object that does the real work, and the ID of this
node; a `WorkQueue` and a `has_synced` callable may be passed as well.

Event handlers (`add_*`, `update_*`, `delete_*`) ignore objects owned by
another node and put the object's `namespace/name` key on the queue. A
delete handler also accepts a `DeletedFinalStateUnknown` wrapping the
object. `process_next_work_item()` takes one key, looks the object up and
reconciles a deep copy of it. If reconciling raises, the key is re-queued
with a back-off that doubles on each failure; otherwise its failure count is
forgotten. A key whose object has left the store, or a malformed key, is
logged and dropped. `run(threadiness, stop_event)` waits for `has_synced`,
starts that many worker threads and blocks until the event is set, then
shuts the queue down.

```python
import threading
from zfspv.controller import ObjectMeta, ObjectStore
from zfspv.backup import BackupController, BackupSpec, BackupStatus, ZFSBackup

class Ops:
    def create_backup(self, bkp): ...
    def destroy_backup(self, bkp): ...
    def remove_finalizer(self, bkp): ...
    def update_backup_info(self, bkp, status): print(bkp.name, status)

bkp = ZFSBackup(
    metadata=ObjectMeta(name="b1", namespace="openebs"),
    spec=BackupSpec(volume_name="pvc-1", owner_node_id="node-a", snap_name="s1"),
    status=BackupStatus.INIT,
)
store = ObjectStore([bkp])
ctrl = BackupController(store, Ops(), node_id="node-a")
ctrl.add_backup(bkp)
ctrl.process_next_work_item()   # prints: b1 BackupStatus.DONE
```

What each controller does when it reconciles:

* **`VolumeController`** — a volume marked for deletion raises
  `VolumeFinalizersPendingError` while finalizers other than the driver's
  remain; otherwise it is destroyed and its finalizer removed. A ready
  volume has its properties reapplied. Any other volume is created, or
  cloned when `spec.snap_name` is set, and recorded as `Ready`, or as
  `Failed` if creation raised. Update events are queued when a property
  changed, the volume is being deleted, or its state is `Pending`.
* **`SnapshotController`** — deletion follows the same finalizer rule,
  raising `FinalizersPendingError`. A snapshot not yet `Ready` is created
  and its info updated. Only deletions are queued on update events.
* **`BackupController`** — a deleted backup has its snapshot destroyed and
  finalizer removed. A backup in `Init` is run and marked `Done`, or
  `Failed` if it raised.
* **`RestoreController`** — a restore in `Init` that is not being deleted
  is run and marked `Done`, or `Failed` if it raised.
* **`NodeController`** — creates this node's `ZFSNode` when it is missing,
  with the pools the node reports and the node's owner reference. It
  updates the object when the pools differ or the owner reference is
  absent or has a different `controller` flag. Only the object named after
  the node in the controller's namespace is queued. Its `run` also queues
  that object at once and then every `poll_interval` seconds (60 by
  default).

The operations objects are described by the protocols `VolumeOperations`,
`SnapshotOperations`, `BackupOperations`, `RestoreOperations` and
`NodeOperations`.

## What the package does not do

The package contains no implementation of those operations. It does not run
`zfs` or `zpool` commands, and it does not talk to a cluster API. It does
not watch objects: the caller fills the `ObjectStore` and calls the event
handlers. It has no CSI gRPC server and no command-line program.

## Running the tests

Install the `test` extra and run `pytest`.