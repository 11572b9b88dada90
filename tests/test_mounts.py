from __future__ import annotations

import threading

import pytest

from nerdy_k8s_volume_binder.binder import Binder
from nerdy_k8s_volume_binder.errors import ClaimLost, ClaimMounted, ClaimNotBound
from nerdy_k8s_volume_binder.models import (
    EVENT_MOUNTED,
    EVENT_UNMOUNTED,
    MOUNT_LOST,
    MOUNT_READY,
    MOUNT_RELEASED,
    READ_WRITE_ONCE,
    BindingEvent,
    Claim,
    MountHandle,
    Volume,
    WorkloadDescriptor,
    WorkloadMount,
)
from nerdy_k8s_volume_binder.mounts import MountCoordinator
from nerdy_k8s_volume_binder.pool import VolumePool
from nerdy_k8s_volume_binder.registry import ClaimRegistry

GI = 2**30


def _coordinator() -> MountCoordinator:
    lock = threading.RLock()
    pool = VolumePool(lock=lock)
    registry = ClaimRegistry(lock=lock)
    return MountCoordinator(Binder(pool, registry))


def _add_volume(coordinator: MountCoordinator, name: str, *, mount_options: tuple[str, ...] = ()) -> None:
    coordinator.binder.pool.register(
        Volume(
            name=name,
            capacity_bytes=GI,
            access_modes=frozenset({READ_WRITE_ONCE}),
            mount_options=mount_options,
        )
    )


def _add_claim(coordinator: MountCoordinator, name: str) -> None:
    coordinator.registry.submit(Claim(name=name, requested_bytes=GI, access_modes=frozenset({READ_WRITE_ONCE})))
    coordinator.binder.bind(name)


def test_request_mount_with_never_bound_claim_raises_claim_not_bound() -> None:
    coordinator = _coordinator()
    _add_claim(coordinator, "my-pvc")

    with pytest.raises(ClaimNotBound, match="is Pending"):
        coordinator.request_mount("my-storage-pod", "my-pvc", "/data")


def test_request_mount_with_unknown_claim_raises_claim_not_bound() -> None:
    coordinator = _coordinator()

    with pytest.raises(ClaimNotBound, match="does not exist"):
        coordinator.request_mount("my-storage-pod", "missing", "/data")


def test_request_mount_with_bound_claim_returns_handle_for_bound_volume() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "nfs-pv-01", mount_options=("hard", "nfsvers=4.1"))
    _add_claim(coordinator, "my-pvc")

    handle = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")

    assert handle.volume_name == "nfs-pv-01"
    assert handle.mount_options == ("hard", "nfsvers=4.1")
    assert coordinator.mount_status(handle) == MOUNT_READY
    assert coordinator.is_ready(handle)


def test_request_mount_twice_with_same_triple_returns_same_handle() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")

    first = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")
    second = coordinator.request_mount("my-storage-pod", "my-pvc", "/data/")
    other_path = coordinator.request_mount("my-storage-pod", "my-pvc", "/logs")

    assert second is first
    assert other_path.handle_id != first.handle_id
    assert len(coordinator.active_mounts()) == 2


def test_request_mount_with_relative_path_raises_value_error() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")

    with pytest.raises(ValueError, match="absolute"):
        coordinator.request_mount("my-storage-pod", "my-pvc", "data")
    with pytest.raises(ValueError, match="workload"):
        coordinator.request_mount(" ", "my-pvc", "/data")


def test_release_mount_is_idempotent() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")
    handle = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")

    assert coordinator.release_mount(handle) is True
    assert coordinator.release_mount(handle) is False
    assert coordinator.mount_status(handle) == MOUNT_RELEASED
    assert coordinator.active_mounts() == []


def test_release_mount_with_stale_handle_keeps_newer_handle() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")
    stale = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")
    coordinator.release_mount(stale)
    fresh = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")

    coordinator.release_mount(stale)

    assert fresh.handle_id != stale.handle_id
    assert coordinator.mount_status(fresh) == MOUNT_READY


def test_claim_release_with_live_mount_raises_claim_mounted() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")
    handle = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")

    with pytest.raises(ClaimMounted, match="1 live mount"):
        coordinator.registry.release("my-pvc")
    assert coordinator.binder.binding_for_claim("my-pvc") is not None

    coordinator.release_mount(handle)
    coordinator.registry.release("my-pvc")

    assert "my-pvc" not in coordinator.registry


def test_lost_claim_reports_lost_mounts_and_rejects_new_mounts() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")
    handle = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")

    coordinator.binder.volume_lost("pv-1")

    assert coordinator.mount_status(handle) == MOUNT_LOST
    with pytest.raises(ClaimLost):
        coordinator.request_mount("other-pod", "my-pvc", "/data")
    with pytest.raises(ClaimMounted):
        coordinator.registry.release("my-pvc")


def test_mount_workload_mounts_every_referenced_claim() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_volume(coordinator, "pv-2")
    _add_claim(coordinator, "data")
    _add_claim(coordinator, "logs")

    handles = coordinator.mount_workload(
        WorkloadDescriptor(
            name="web",
            mounts=(WorkloadMount(volume_ref="data", path="/data"), WorkloadMount(volume_ref="logs", path="/logs")),
        )
    )

    assert [(handle.claim_name, handle.path) for handle in handles] == [("data", "/data"), ("logs", "/logs")]


def test_mount_workload_with_unbound_claim_rolls_back_new_mounts_only() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "data")
    _add_claim(coordinator, "cache")
    existing = coordinator.request_mount("web", "data", "/data")

    with pytest.raises(ClaimNotBound):
        coordinator.mount_workload(
            WorkloadDescriptor(
                name="web",
                mounts=(
                    WorkloadMount(volume_ref="data", path="/data"),
                    WorkloadMount(volume_ref="data", path="/backup"),
                    WorkloadMount(volume_ref="cache", path="/cache"),
                ),
            )
        )

    assert coordinator.active_mounts() == [existing]


def test_mount_listeners_receive_mount_and_unmount_events() -> None:
    coordinator = _coordinator()
    events: list[BindingEvent] = []
    coordinator.add_mount_listener(events.append)
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")

    handle = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")
    coordinator.request_mount("my-storage-pod", "my-pvc", "/data")
    coordinator.release_mount(handle)
    coordinator.release_mount(handle)

    assert [(event.event, event.workload, event.path) for event in events] == [
        (EVENT_MOUNTED, "my-storage-pod", "/data"),
        (EVENT_UNMOUNTED, "my-storage-pod", "/data"),
    ]


def test_mount_workload_rollback_keeps_handle_issued_by_another_caller() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "data")
    _add_claim(coordinator, "cache")
    other_caller: list[MountHandle] = []

    def _mount_same_triple_elsewhere(event: BindingEvent) -> None:
        if event.event == EVENT_MOUNTED and event.path == "/data" and not other_caller:
            other_caller.append(coordinator.request_mount("web", "data", "/logs"))

    coordinator.add_mount_listener(_mount_same_triple_elsewhere)

    with pytest.raises(ClaimNotBound):
        coordinator.mount_workload(
            WorkloadDescriptor(
                name="web",
                mounts=(
                    WorkloadMount(volume_ref="data", path="/data"),
                    WorkloadMount(volume_ref="data", path="/logs"),
                    WorkloadMount(volume_ref="cache", path="/cache"),
                ),
            )
        )

    assert coordinator.mount_status(other_caller[0]) == MOUNT_READY
    assert coordinator.active_mounts() == [other_caller[0]]


def test_request_mount_with_redundant_leading_slashes_reuses_handle() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")

    first = coordinator.request_mount("my-storage-pod", "my-pvc", "/data")
    second = coordinator.request_mount("my-storage-pod", "my-pvc", "//data")

    assert second is first
    assert first.path == "/data"


def test_request_mount_with_non_string_path_raises_value_error() -> None:
    coordinator = _coordinator()
    _add_volume(coordinator, "pv-1")
    _add_claim(coordinator, "my-pvc")

    with pytest.raises(ValueError, match="must be a string"):
        coordinator.request_mount("my-storage-pod", "my-pvc", 42)
