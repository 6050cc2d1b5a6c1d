"""Node-side controller that keeps this node's ZFSNode object up to date.

Every node publishes one ZFSNode object, named after the node and kept in
the driver's namespace. It lists the ZFS pools found on the node. The
controller polls the pools at a fixed interval and creates the object if it
is missing. It updates the object when the pools or its owner reference to
the node have changed.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from zfspv.controller import (
    Controller,
    DeletedFinalStateUnknown,
    InvalidKeyError,
    NotFoundError,
    ObjectMeta,
    ObjectStore,
    WorkQueue,
    split_meta_namespace_key,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60.0


@dataclass
class Pool:
    """A ZFS pool found on the node."""

    name: str
    uuid: str = ""
    free: str = ""


@dataclass
class OwnerReference:
    """A reference from an object to the object that owns it."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool | None = None


@dataclass
class ZFSNode:
    """The pools one node offers, published for schedulers to read."""

    metadata: ObjectMeta
    pools: list[Pool] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace


class NodeOperations(Protocol):
    """The storage and API actions the node controller drives."""

    def list_zfs_pools(self) -> list[Pool]:
        """Return the pools present on this node."""

    def create_node(self, node: ZFSNode) -> ZFSNode:
        """Create the node object through the API."""

    def update_node(self, node: ZFSNode) -> ZFSNode:
        """Update the node object through the API."""


class NodeController(Controller):
    """Keeps the ZFSNode object for this node in step with its pools."""

    resource_name = "Node"

    def __init__(
        self,
        store: ObjectStore,
        ops: NodeOperations,
        namespace: str,
        node_id: str,
        owner_ref: OwnerReference,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        queue: WorkQueue | None = None,
        has_synced=None,
    ) -> None:
        super().__init__(store, queue if queue is not None else WorkQueue("Node"), has_synced)
        self.ops = ops
        self.namespace = namespace
        self.node_id = node_id
        self.owner_ref = owner_ref
        self.poll_interval = poll_interval

    def sync_handler(self, key: str) -> None:
        """Reconcile the node object named by ``key``; a malformed key is ignored."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError:
            logger.error("invalid resource key: %s", key)
            return
        self.sync_node(namespace, name)

    def sync_object(self, obj: Any) -> None:
        self.sync_node(obj.metadata.namespace, obj.metadata.name)

    def sync_node(self, namespace: str, name: str) -> None:
        """Create the node object if it is missing, or update it if it is stale."""
        try:
            node: ZFSNode | None = copy.deepcopy(self.store.get(namespace, name))
        except NotFoundError:
            node = None

        pools = self.ops.list_zfs_pools()

        if node is None:
            node = ZFSNode(
                metadata=ObjectMeta(name=name, namespace=namespace),
                pools=list(pools),
                owner_references=[dataclasses.replace(self.owner_ref)],
            )
            logger.info("zfs node controller: creating new node object for %r", node)
            try:
                self.ops.create_node(node)
            except Exception as err:
                raise RuntimeError(f"create zfs node {namespace}/{name}: {err}") from err
            logger.info("zfs node controller: created node object %s/%s", namespace, name)
            return

        update_required = False
        owner_refs, required = self.is_owner_refs_update_required(node.owner_references)
        if required:
            logger.info(
                "zfs node controller: node owner references updated current=%r, required=%r",
                node.owner_references,
                owner_refs,
            )
            node.owner_references = owner_refs
            update_required = True

        if node.pools != pools:
            logger.info(
                "zfs node controller: node pools updated current=%r, required=%r",
                node.pools,
                pools,
            )
            node.pools = list(pools)
            update_required = True

        if not update_required:
            return

        logger.info("zfs node controller: updating node object with %r", node)
        try:
            self.ops.update_node(node)
        except Exception as err:
            raise RuntimeError(f"update zfs node {namespace}/{name}: {err}") from err
        logger.info("zfs node controller: updated node object %s/%s", namespace, name)

    def add_node(self, obj: Any) -> None:
        """Handle a newly seen node object."""
        if not isinstance(obj, ZFSNode):
            logger.error("Couldn't get node object %r", obj)
            return
        logger.info("Got add event for zfs node %s/%s", obj.namespace, obj.name)
        self.enqueue_node(obj)

    def update_node(self, old_obj: Any, new_obj: Any) -> None:
        """Handle a changed node object."""
        if not isinstance(new_obj, ZFSNode):
            logger.error("Couldn't get node object %r", new_obj)
            return
        logger.info("Got update event for zfs node %s/%s", new_obj.namespace, new_obj.name)
        self.enqueue_node(new_obj)

    def delete_node(self, obj: Any) -> None:
        """Handle a deleted node object, unwrapping a tombstone if needed."""
        node = obj
        if not isinstance(node, ZFSNode):
            if not isinstance(obj, DeletedFinalStateUnknown):
                logger.error("Couldn't get object from tombstone %r", obj)
                return
            node = obj.obj
            if not isinstance(node, ZFSNode):
                logger.error("Tombstone contained object that is not a ZFSNode %r", obj)
                return
        logger.info("Got delete event for node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def enqueue_node(self, node: ZFSNode) -> None:
        """Queue the node object if it is this node's, in the driver's namespace."""
        if node.namespace != self.namespace or node.name != self.node_id:
            logger.warning("skipping zfs node object %s/%s", node.namespace, node.name)
            return
        self.enqueue(node)

    def is_owner_refs_update_required(
        self, owner_refs: list[OwnerReference]
    ) -> tuple[list[OwnerReference], bool]:
        """Return the owner references the node should carry, and whether they changed."""
        required = self.owner_ref
        refs = [dataclasses.replace(ref) for ref in owner_refs]
        for ref in refs:
            if ref.uid != required.uid:
                continue
            if ref.controller != required.controller:
                ref.controller = required.controller
                return refs, True
            return refs, False
        refs.append(dataclasses.replace(required))
        return refs, True

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers and queue this node for a resync every poll interval until stopped."""
        workers: list[threading.Thread] = []
        key = f"{self.namespace}/{self.node_id}"
        try:
            workers = self._prepare(threadiness, stop_event)
            delay = 0.0
            while not stop_event.wait(delay):
                self.queue.add(key)
                delay = self.poll_interval
            logger.info("Shutting down Node controller")
        finally:
            self.queue.shut_down()
        for worker in workers:
            worker.join()