from __future__ import annotations

import logging
import posixpath
from typing import Callable
import uuid

from .binder import Binder
from .errors import ClaimLost, ClaimMounted, ClaimNotBound, VolumeBindingError
from .models import (
    EVENT_MOUNTED,
    EVENT_UNMOUNTED,
    MOUNT_LOST,
    MOUNT_READY,
    MOUNT_RELEASED,
    PHASE_BOUND,
    PHASE_LOST,
    BindingEvent,
    Claim,
    MountHandle,
    WorkloadDescriptor,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

MountListener = Callable[[BindingEvent], None]


class MountCoordinator:
    def __init__(self, binder: Binder) -> None:
        self.binder = binder
        self.registry = binder.registry
        self.lock = binder.lock
        self._handles: dict[tuple[str, str, str], MountHandle] = {}
        self._listeners: list[MountListener] = []

        self.registry.add_release_guard(self._guard_claim_release)

    def add_mount_listener(self, listener: MountListener) -> None:
        self._listeners.append(listener)

    def request_mount(self, workload: str, claim_name: str, path: str) -> MountHandle:
        handle, _ = self._issue_mount(workload, claim_name, path)
        return handle

    def _issue_mount(self, workload: str, claim_name: str, path: str) -> tuple[MountHandle, bool]:
        """Return the live handle for the triple and whether this call created it."""
        if not isinstance(workload, str) or not workload.strip():
            raise ValueError("workload reference must not be empty")
        workload = workload.strip()
        path = _normalize_mount_path(path)

        with self.lock:
            claim = self.registry.lookup(claim_name)
            _require_bound(claim_name, claim)

            key = (workload, claim_name, path)
            existing = self._handles.get(key)
            if existing is not None:
                return existing, False

            volume = self.binder.pool.get(claim.volume_name)
            handle = MountHandle(
                handle_id=uuid.uuid4().hex,
                workload=workload,
                claim_name=claim_name,
                path=path,
                volume_name=volume.name,
                mount_options=volume.mount_options,
                issued_at=utc_now_iso(),
            )
            self._handles[key] = handle

        logger.info("Mounted claim %s (volume %s) for %s at %s", claim_name, handle.volume_name, workload, path)
        self._notify(EVENT_MOUNTED, handle)
        return handle, True

    def release_mount(self, handle: MountHandle) -> bool:
        with self.lock:
            current = self._handles.get(handle.key)
            if current is None or current.handle_id != handle.handle_id:
                return False
            del self._handles[handle.key]

        logger.info("Unmounted claim %s for %s at %s", handle.claim_name, handle.workload, handle.path)
        self._notify(EVENT_UNMOUNTED, handle)
        return True

    def mount_status(self, handle: MountHandle) -> str:
        with self.lock:
            current = self._handles.get(handle.key)
            if current is None or current.handle_id != handle.handle_id:
                return MOUNT_RELEASED
            claim = self.registry.lookup(handle.claim_name)
            if claim is None or claim.phase != PHASE_BOUND or claim.volume_name != handle.volume_name:
                return MOUNT_LOST
        return MOUNT_READY

    def is_ready(self, handle: MountHandle) -> bool:
        return self.mount_status(handle) == MOUNT_READY

    def mounts_for_claim(self, claim_name: str) -> list[MountHandle]:
        with self.lock:
            return [handle for handle in self._handles.values() if handle.claim_name == claim_name]

    def active_mounts(self) -> list[MountHandle]:
        with self.lock:
            return list(self._handles.values())

    def mount_workload(self, workload: WorkloadDescriptor) -> list[MountHandle]:
        """Mount every claim a workload references, or none of them.

        Only handles created by this call are rolled back on failure; handles
        that were already live stay with their owners.
        """
        issued: list[MountHandle] = []
        handles: list[MountHandle] = []
        try:
            for mount in workload.mounts:
                handle, created = self._issue_mount(workload.name, mount.volume_ref, mount.path)
                if created:
                    issued.append(handle)
                handles.append(handle)
        except (VolumeBindingError, ValueError):
            for handle in issued:
                self.release_mount(handle)
            raise
        return handles

    def _guard_claim_release(self, claim: Claim) -> None:
        live_mounts = self.mounts_for_claim(claim.name)
        if live_mounts:
            raise ClaimMounted(claim.name, len(live_mounts))

    def _notify(self, event: str, handle: MountHandle) -> None:
        mount_event = BindingEvent(
            event=event,
            claim_name=handle.claim_name,
            volume_name=handle.volume_name,
            created_at=utc_now_iso(),
            workload=handle.workload,
            path=handle.path,
        )
        for listener in list(self._listeners):
            listener(mount_event)


def _require_bound(claim_name: str, claim: Claim | None) -> None:
    if claim is None:
        raise ClaimNotBound(claim_name)
    if claim.phase == PHASE_LOST:
        raise ClaimLost(claim_name)
    if claim.phase != PHASE_BOUND:
        raise ClaimNotBound(claim_name, claim.phase)


def _normalize_mount_path(path: str) -> str:
    if not isinstance(path, str):
        raise ValueError(f"mount path must be a string, got {type(path).__name__}")
    stripped = path.strip()
    if not stripped.startswith("/"):
        raise ValueError(f"mount path must be absolute, got '{path}'")
    # normpath keeps a leading '//' (POSIX allows it to be special); mounts treat it as '/'.
    return "/" + posixpath.normpath(stripped).lstrip("/")
