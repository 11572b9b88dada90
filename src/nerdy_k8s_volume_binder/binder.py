from __future__ import annotations

import logging
import threading
from typing import Callable

from .models import (
    EVENT_BOUND,
    EVENT_LOST,
    EVENT_RELEASED,
    OUTCOME_BOUND,
    OUTCOME_LOST,
    OUTCOME_WAITING_FOR_CAPACITY,
    PHASE_BOUND,
    PHASE_LOST,
    PHASE_PENDING,
    Binding,
    BindingEvent,
    BindOutcome,
    Claim,
    Volume,
    utc_now_iso,
)
from .pool import VolumePool
from .registry import ClaimRegistry

logger = logging.getLogger(__name__)

BindingListener = Callable[[BindingEvent], None]


class Binder:
    """Pairs pending claims with unbound volumes.

    Matching passes are serialized by ``_matching_lock``. The candidate search
    and the two-sided reservation for a single claim run inside the shared state
    lock, so readers never see a claim bound without its volume (or the reverse).
    Lock order is matching lock, then state lock; ``reconcile`` must not be
    called while the state lock is held.
    """

    def __init__(self, pool: VolumePool, registry: ClaimRegistry) -> None:
        if pool.lock is not registry.lock:
            raise ValueError("VolumePool and ClaimRegistry must share the same state lock")

        self.pool = pool
        self.registry = registry
        self.lock = pool.lock
        self._matching_lock = threading.Lock()
        self._bindings: dict[str, Binding] = {}
        self._claims_by_volume: dict[str, str] = {}
        self._listeners: list[BindingListener] = []

        registry.add_release_hook(self._unbind_released_claim)
        registry.add_release_listener(self._on_claim_released)
        pool.add_register_listener(self._on_volume_registered)

    def add_binding_listener(self, listener: BindingListener) -> None:
        self._listeners.append(listener)

    def bind(self, claim_name: str) -> BindOutcome:
        self.registry.get(claim_name)
        self.reconcile()
        return self.outcome(claim_name)

    def outcome(self, claim_name: str) -> BindOutcome:
        claim = self.registry.get(claim_name)
        if claim.phase == PHASE_BOUND:
            return BindOutcome(claim_name=claim.name, status=OUTCOME_BOUND, volume_name=claim.volume_name)
        if claim.phase == PHASE_LOST:
            return BindOutcome(claim_name=claim.name, status=OUTCOME_LOST, volume_name=claim.volume_name)
        return BindOutcome(claim_name=claim.name, status=OUTCOME_WAITING_FOR_CAPACITY)

    def reconcile(self) -> list[Binding]:
        created: list[Binding] = []
        with self._matching_lock:
            for claim in self.registry.pending():
                binding = self._reserve(claim.name)
                if binding is not None:
                    created.append(binding)

        for binding in created:
            self._notify(EVENT_BOUND, binding.claim_name, binding.volume_name)
        return created

    def volume_lost(self, volume_name: str) -> Claim | None:
        """Record that a volume was destroyed outside of the pool.

        The bound claim, if any, becomes Lost and is never rebound.
        """
        with self.lock:
            volume = self.pool.get(volume_name)
            self.pool.evict(volume_name)
            if volume.claim_name is None:
                logger.info("Volume %s disappeared while unbound; removed from the pool", volume_name)
                return None
            self._drop_binding(volume.claim_name, volume_name)
            lost = self.registry.mark_lost(volume.claim_name)

        logger.warning("Volume %s was destroyed; claim %s is now Lost", volume_name, lost.name)
        self._notify(EVENT_LOST, lost.name, volume_name, message="volume destroyed outside the pool")
        return lost

    def binding_for_claim(self, claim_name: str) -> Binding | None:
        with self.lock:
            return self._bindings.get(claim_name)

    def binding_for_volume(self, volume_name: str) -> Binding | None:
        with self.lock:
            claim_name = self._claims_by_volume.get(volume_name)
            return self._bindings.get(claim_name) if claim_name is not None else None

    def bindings(self) -> list[Binding]:
        with self.lock:
            return list(self._bindings.values())

    def _reserve(self, claim_name: str) -> Binding | None:
        with self.lock:
            claim = self.registry.lookup(claim_name)
            if claim is None or claim.phase != PHASE_PENDING:
                return None

            volume = next(
                self.pool.find(
                    storage_class=claim.storage_class,
                    min_capacity=claim.requested_bytes,
                    access_modes=claim.access_modes,
                ),
                None,
            )
            if volume is None:
                logger.debug("Claim %s is waiting for capacity", claim_name)
                return None

            self.pool.assign(volume.name, claim.name)
            self.registry.assign(claim.name, volume.name)
            binding = Binding(claim_name=claim.name, volume_name=volume.name, bound_at=utc_now_iso())
            self._bindings[claim.name] = binding
            self._claims_by_volume[volume.name] = claim.name

        logger.info("Bound claim %s to volume %s", binding.claim_name, binding.volume_name)
        return binding

    def _unbind_released_claim(self, claim: Claim) -> None:
        # Runs inside ClaimRegistry.release with the state lock held.
        binding = self._bindings.get(claim.name)
        if binding is None:
            return

        self._drop_binding(claim.name, binding.volume_name)
        self.registry.unassign(claim.name)
        # Every reclaim policy returns the volume to the pool; the policy is reported, not enforced.
        self.pool.unassign(binding.volume_name)
        logger.info("Returned volume %s to the pool after claim %s was released", binding.volume_name, claim.name)

    def _on_claim_released(self, claim: Claim) -> None:
        if claim.volume_name is not None:
            self._notify(EVENT_RELEASED, claim.name, claim.volume_name)
        self.reconcile()

    def _on_volume_registered(self, volume: Volume) -> None:
        self.reconcile()

    def _drop_binding(self, claim_name: str, volume_name: str) -> None:
        self._bindings.pop(claim_name, None)
        self._claims_by_volume.pop(volume_name, None)

    def _notify(self, event: str, claim_name: str, volume_name: str | None, *, message: str = "") -> None:
        binding_event = BindingEvent(
            event=event,
            claim_name=claim_name,
            volume_name=volume_name,
            created_at=utc_now_iso(),
            message=message,
        )
        for listener in list(self._listeners):
            listener(binding_event)
