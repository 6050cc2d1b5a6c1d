"""Builders for the responses a CSI controller returns to its callers."""

from __future__ import annotations

from dataclasses import dataclass, field


def _to_int32(value: int) -> int:
    """Truncate an integer to a signed 32-bit value."""
    return ((value + 2**31) % 2**32) - 2**31


@dataclass
class Topology:
    """Topology segments a volume is accessible from."""

    segments: dict[str, str] = field(default_factory=dict)


@dataclass
class VolumeContentSource:
    """Where a new volume's initial content comes from."""

    snapshot_id: str | None = None
    volume_id: str | None = None


@dataclass
class Volume:
    """A provisioned volume as reported to the orchestrator."""

    volume_id: str = ""
    capacity_bytes: int = 0
    volume_context: dict[str, str] = field(default_factory=dict)
    content_source: VolumeContentSource | None = None
    accessible_topology: list[Topology] = field(default_factory=list)


@dataclass
class CreateVolumeResponse:
    """Response to a create-volume request."""

    volume: Volume = field(default_factory=Volume)


class CreateVolumeResponseBuilder:
    """Fluent builder for :class:`CreateVolumeResponse`."""

    def __init__(self) -> None:
        self._response = CreateVolumeResponse()

    def with_name(self, name: str) -> CreateVolumeResponseBuilder:
        self._response.volume.volume_id = name
        return self

    def with_capacity(self, capacity: int) -> CreateVolumeResponseBuilder:
        self._response.volume.capacity_bytes = capacity
        return self

    def with_context(self, ctx: dict[str, str]) -> CreateVolumeResponseBuilder:
        self._response.volume.volume_context = ctx
        return self

    def with_content_source(
        self, source: VolumeContentSource | None
    ) -> CreateVolumeResponseBuilder:
        self._response.volume.content_source = source
        return self

    def with_topology(self, topology: dict[str, str]) -> CreateVolumeResponseBuilder:
        """Set a single accessible topology, replacing any earlier one."""
        self._response.volume.accessible_topology = [Topology(segments=topology)]
        return self

    def build(self) -> CreateVolumeResponse:
        return self._response


@dataclass
class DeleteVolumeResponse:
    """Response to a delete-volume request; it carries no fields."""


class DeleteVolumeResponseBuilder:
    """Builder for :class:`DeleteVolumeResponse`."""

    def __init__(self) -> None:
        self._response = DeleteVolumeResponse()

    def build(self) -> DeleteVolumeResponse:
        return self._response


@dataclass
class ControllerExpandVolumeResponse:
    """Response to a controller volume expansion request."""

    capacity_bytes: int = 0
    node_expansion_required: bool = False


class ControllerExpandVolumeResponseBuilder:
    """Fluent builder for :class:`ControllerExpandVolumeResponse`."""

    def __init__(self) -> None:
        self._response = ControllerExpandVolumeResponse()

    def with_capacity_bytes(self, capacity: int) -> ControllerExpandVolumeResponseBuilder:
        self._response.capacity_bytes = capacity
        return self

    def with_node_expansion_required(
        self, required: bool
    ) -> ControllerExpandVolumeResponseBuilder:
        self._response.node_expansion_required = required
        return self

    def build(self) -> ControllerExpandVolumeResponse:
        return self._response


@dataclass
class Timestamp:
    """A point in time as seconds and nanoseconds since the epoch."""

    seconds: int = 0
    nanos: int = 0


@dataclass
class Snapshot:
    """A snapshot as reported to the orchestrator."""

    size_bytes: int = 0
    snapshot_id: str = ""
    source_volume_id: str = ""
    creation_time: Timestamp | None = None
    ready_to_use: bool = False


@dataclass
class CreateSnapshotResponse:
    """Response to a create-snapshot request."""

    snapshot: Snapshot = field(default_factory=Snapshot)


class CreateSnapshotResponseBuilder:
    """Fluent builder for :class:`CreateSnapshotResponse`."""

    def __init__(self) -> None:
        self._response = CreateSnapshotResponse()

    def with_size(self, size: int) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.size_bytes = size
        return self

    def with_snapshot_id(self, snapshot_id: str) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.snapshot_id = snapshot_id
        return self

    def with_source_volume_id(self, volume_id: str) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.source_volume_id = volume_id
        return self

    def with_creation_time(self, tsec: int, tnsec: int) -> CreateSnapshotResponseBuilder:
        """Set the creation time; nanoseconds are truncated to 32 bits."""
        self._response.snapshot.creation_time = Timestamp(
            seconds=tsec, nanos=_to_int32(tnsec)
        )
        return self

    def with_ready_to_use(self, ready_to_use: bool) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.ready_to_use = ready_to_use
        return self

    def build(self) -> CreateSnapshotResponse:
        return self._response