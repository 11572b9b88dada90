from __future__ import annotations

from dataclasses import dataclass
import logging
import threading

from .binder import Binder
from .errors import DuplicateClaim, DuplicateVolume, VolumeBindingError
from .history import BindingHistoryStore
from .manifest import ManifestBundle, load_manifests
from .models import BindingEvent, BindOutcome, Claim, MountHandle, StorageSnapshot, Volume, WorkloadDescriptor
from .mounts import MountCoordinator
from .pool import VolumePool
from .registry import ClaimRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    volumes: tuple[Volume, ...] = ()
    outcomes: tuple[BindOutcome, ...] = ()
    mounts: tuple[MountHandle, ...] = ()
    errors: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()


class VolumeBindingController:
    """Owns one pool, registry, binder and mount coordinator over a shared state lock."""

    def __init__(self, *, history_store: BindingHistoryStore | None = None) -> None:
        self.lock = threading.RLock()
        self.pool = VolumePool(lock=self.lock)
        self.registry = ClaimRegistry(lock=self.lock)
        self.binder = Binder(self.pool, self.registry)
        self.mounts = MountCoordinator(self.binder)
        self.history_store = history_store

        if history_store is not None:
            self.binder.add_binding_listener(self._record_event)
            self.mounts.add_mount_listener(self._record_event)

    def register_volume(self, volume: Volume) -> Volume:
        return self.pool.register(volume)

    def release_volume(self, volume_name: str) -> Volume:
        return self.pool.release(volume_name)

    def volume_lost(self, volume_name: str) -> Claim | None:
        return self.binder.volume_lost(volume_name)

    def submit_claim(self, claim: Claim) -> BindOutcome:
        stored = self.registry.submit(claim)
        return self.binder.bind(stored.name)

    def claim_outcome(self, claim_name: str) -> BindOutcome:
        return self.binder.outcome(claim_name)

    def release_claim(self, claim_name: str) -> Claim:
        return self.registry.release(claim_name)

    def request_mount(self, workload: str, claim_name: str, path: str) -> MountHandle:
        return self.mounts.request_mount(workload, claim_name, path)

    def release_mount(self, handle: MountHandle) -> bool:
        return self.mounts.release_mount(handle)

    def mount_workload(self, workload: WorkloadDescriptor) -> list[MountHandle]:
        return self.mounts.mount_workload(workload)

    def pending_claims(self) -> list[Claim]:
        return self.registry.pending()

    def apply_manifest(self, text: str) -> ApplyResult:
        return self.apply_bundle(load_manifests(text))

    def apply_bundle(self, bundle: ManifestBundle) -> ApplyResult:
        """Register volumes, submit claims, then mount workloads.

        Duplicates and unmountable workloads are reported in ``errors`` so a
        reconciliation loop can re-apply the same bundle.
        """
        volumes: list[Volume] = []
        outcomes: list[BindOutcome] = []
        handles: list[MountHandle] = []
        errors: list[str] = []

        for volume in bundle.volumes:
            try:
                volumes.append(self.register_volume(volume))
            except DuplicateVolume as error:
                errors.append(str(error))

        for claim in bundle.claims:
            try:
                outcomes.append(self.submit_claim(claim))
            except DuplicateClaim as error:
                errors.append(str(error))
                outcomes.append(self.claim_outcome(claim.name))

        for workload in bundle.workloads:
            try:
                handles.extend(self.mount_workload(workload))
            except (VolumeBindingError, ValueError) as error:
                errors.append(f"Workload '{workload.name}' was not mounted: {error}")

        if errors:
            logger.warning("Applied manifest with %d problem(s)", len(errors))
        return ApplyResult(
            volumes=tuple(volumes),
            outcomes=tuple(outcomes),
            mounts=tuple(handles),
            errors=tuple(errors),
            skipped=bundle.skipped,
        )

    def snapshot(self) -> StorageSnapshot:
        with self.lock:
            return StorageSnapshot(
                volumes=tuple(self.pool.list_volumes()),
                claims=tuple(self.registry.list_claims()),
                bindings=tuple(self.binder.bindings()),
                mounts=tuple(self.mounts.active_mounts()),
                pending_claims=tuple(claim.name for claim in self.registry.pending()),
            )

    def _record_event(self, event: BindingEvent) -> None:
        if self.history_store is not None:
            self.history_store.record_event(event)
