from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import random
import threading

import pytest

from nerdy_k8s_volume_binder.binder import Binder
from nerdy_k8s_volume_binder.errors import ClaimNotFound, VolumeNotFound
from nerdy_k8s_volume_binder.models import (
    EVENT_BOUND,
    EVENT_LOST,
    EVENT_RELEASED,
    OUTCOME_BOUND,
    OUTCOME_LOST,
    OUTCOME_WAITING_FOR_CAPACITY,
    PHASE_BOUND,
    PHASE_LOST,
    PHASE_PENDING,
    READ_ONLY_MANY,
    READ_WRITE_MANY,
    READ_WRITE_ONCE,
    RECLAIM_DELETE,
    RECLAIM_RETAIN,
    BindingEvent,
    Claim,
    Volume,
)
from nerdy_k8s_volume_binder.pool import VolumePool
from nerdy_k8s_volume_binder.registry import ClaimRegistry

GI = 2**30


def _components() -> tuple[VolumePool, ClaimRegistry, Binder]:
    lock = threading.RLock()
    pool = VolumePool(lock=lock)
    registry = ClaimRegistry(lock=lock)
    return pool, registry, Binder(pool, registry)


def _volume(
    name: str,
    *,
    capacity_gi: int = 1,
    modes: tuple[str, ...] = (READ_WRITE_ONCE,),
    storage_class: str | None = None,
    reclaim_policy: str = RECLAIM_RETAIN,
) -> Volume:
    return Volume(
        name=name,
        capacity_bytes=capacity_gi * GI,
        access_modes=frozenset(modes),
        storage_class=storage_class,
        reclaim_policy=reclaim_policy,
    )


def _claim(
    name: str,
    *,
    requested_gi: int = 1,
    modes: tuple[str, ...] = (READ_WRITE_ONCE,),
    storage_class: str | None = None,
) -> Claim:
    return Claim(
        name=name,
        requested_bytes=requested_gi * GI,
        access_modes=frozenset(modes),
        storage_class=storage_class,
    )


def _submit_and_bind(registry: ClaimRegistry, binder: Binder, claim: Claim):
    registry.submit(claim)
    return binder.bind(claim.name)


def _assert_binding_invariants(pool: VolumePool, registry: ClaimRegistry, binder: Binder) -> None:
    bindings = binder.bindings()
    claim_names = [binding.claim_name for binding in bindings]
    volume_names = [binding.volume_name for binding in bindings]
    assert len(claim_names) == len(set(claim_names))
    assert len(volume_names) == len(set(volume_names))

    for binding in bindings:
        claim = registry.get(binding.claim_name)
        volume = pool.get(binding.volume_name)
        assert claim.phase == PHASE_BOUND
        assert claim.volume_name == volume.name
        assert volume.claim_name == claim.name
        assert volume.capacity_bytes >= claim.requested_bytes
        assert claim.access_modes <= volume.access_modes

    bound_claims = {claim.name for claim in registry.list_claims() if claim.phase == PHASE_BOUND}
    bound_volumes = {volume.name for volume in pool.list_volumes() if volume.claim_name is not None}
    assert bound_claims == set(claim_names)
    assert bound_volumes == set(volume_names)


def test_binder_with_pool_and_registry_on_different_locks_raises_value_error() -> None:
    with pytest.raises(ValueError, match="same state lock"):
        Binder(VolumePool(), ClaimRegistry())


def test_bind_with_matching_volume_binds_claim_to_registered_volume() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-1"))

    outcome = _submit_and_bind(registry, binder, _claim("claim-a"))

    assert outcome.status == OUTCOME_BOUND
    assert outcome.volume_name == "pv-1"
    assert registry.get("claim-a").phase == PHASE_BOUND
    assert pool.get("pv-1").claim_name == "claim-a"
    binding = binder.binding_for_claim("claim-a")
    assert binding is not None and binding.volume_name == "pv-1"
    assert binder.binding_for_volume("pv-1") == binding


def test_bind_without_volumes_returns_waiting_for_capacity_then_binds_on_registration() -> None:
    pool, registry, binder = _components()

    outcome = _submit_and_bind(registry, binder, _claim("claim-a"))

    assert outcome.status == OUTCOME_WAITING_FOR_CAPACITY
    assert registry.get("claim-a").phase == PHASE_PENDING

    pool.register(_volume("pv-1"))

    assert registry.get("claim-a").phase == PHASE_BOUND
    assert binder.outcome("claim-a").volume_name == "pv-1"


def test_registration_with_two_pending_claims_binds_oldest_claim_first() -> None:
    pool, registry, binder = _components()
    _submit_and_bind(registry, binder, _claim("claim-a"))
    _submit_and_bind(registry, binder, _claim("claim-b"))

    pool.register(_volume("pv-1"))

    assert registry.get("claim-a").phase == PHASE_BOUND
    assert registry.get("claim-b").phase == PHASE_PENDING
    assert binder.outcome("claim-b").status == OUTCOME_WAITING_FOR_CAPACITY


def test_bind_selects_smallest_eligible_volume() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-10", capacity_gi=10))
    pool.register(_volume("pv-2", capacity_gi=2))
    pool.register(_volume("pv-5", capacity_gi=5))

    outcome = _submit_and_bind(registry, binder, _claim("claim-a", requested_gi=2))

    assert outcome.volume_name == "pv-2"


def test_bind_with_insufficient_capacity_or_modes_keeps_claim_pending() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-small", capacity_gi=1, modes=(READ_WRITE_ONCE, READ_WRITE_MANY)))
    pool.register(_volume("pv-rwo", capacity_gi=10, modes=(READ_WRITE_ONCE,)))

    outcome = _submit_and_bind(registry, binder, _claim("claim-a", requested_gi=5, modes=(READ_WRITE_MANY,)))

    assert outcome.status == OUTCOME_WAITING_FOR_CAPACITY
    assert binder.bindings() == []


def test_bind_with_storage_class_requires_exact_label_match() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-slow", storage_class="slow-nfs"))
    pool.register(_volume("pv-fast", capacity_gi=2, storage_class="fast"))

    fast = _submit_and_bind(registry, binder, _claim("claim-fast", storage_class="fast"))
    missing = _submit_and_bind(registry, binder, _claim("claim-gp3", storage_class="aws-gp3-standard"))
    unlabelled = _submit_and_bind(registry, binder, _claim("claim-any"))

    assert fast.volume_name == "pv-fast"
    assert missing.status == OUTCOME_WAITING_FOR_CAPACITY
    assert unlabelled.volume_name == "pv-slow"


def test_bind_with_pending_older_claim_still_binds_newer_claim_that_fits() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-1", capacity_gi=1))
    _submit_and_bind(registry, binder, _claim("claim-big", requested_gi=5))

    outcome = _submit_and_bind(registry, binder, _claim("claim-small", requested_gi=1))

    assert outcome.volume_name == "pv-1"
    assert registry.get("claim-big").phase == PHASE_PENDING


def test_bind_with_unknown_claim_raises_claim_not_found() -> None:
    _, _, binder = _components()

    with pytest.raises(ClaimNotFound):
        binder.bind("missing")


def test_release_then_resubmit_rebinds_to_same_volume() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-1"))
    first = _submit_and_bind(registry, binder, _claim("claim-a"))

    released = registry.release("claim-a")

    assert released.volume_name == "pv-1"
    assert pool.get("pv-1").claim_name is None
    assert binder.binding_for_claim("claim-a") is None

    second = _submit_and_bind(registry, binder, _claim("claim-a"))

    assert first.volume_name == second.volume_name == "pv-1"


def test_release_frees_volume_for_oldest_pending_claim() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-1"))
    _submit_and_bind(registry, binder, _claim("claim-a"))
    _submit_and_bind(registry, binder, _claim("claim-b"))
    _submit_and_bind(registry, binder, _claim("claim-c"))

    registry.release("claim-a")

    assert registry.get("claim-b").phase == PHASE_BOUND
    assert registry.get("claim-c").phase == PHASE_PENDING


def test_release_with_delete_reclaim_policy_returns_volume_for_resubmitted_claim() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-1", reclaim_policy=RECLAIM_DELETE))
    _submit_and_bind(registry, binder, _claim("claim-a"))

    released = registry.release("claim-a")

    assert released.volume_name == "pv-1"
    assert pool.get("pv-1").claim_name is None
    assert pool.get("pv-1").reclaim_policy == RECLAIM_DELETE
    outcome = _submit_and_bind(registry, binder, _claim("claim-a"))
    assert outcome.status == OUTCOME_BOUND
    assert outcome.volume_name == "pv-1"


def test_release_of_pending_claim_is_not_rebound_by_later_registration() -> None:
    pool, registry, binder = _components()
    _submit_and_bind(registry, binder, _claim("claim-a"))

    registry.release("claim-a")
    pool.register(_volume("pv-1"))

    assert binder.bindings() == []
    assert pool.get("pv-1").claim_name is None


def test_volume_lost_marks_claim_lost_and_never_rebinds() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-1"))
    _submit_and_bind(registry, binder, _claim("claim-a"))

    lost = binder.volume_lost("pv-1")
    pool.register(_volume("pv-2"))

    assert lost is not None and lost.phase == PHASE_LOST
    assert "pv-1" not in pool
    assert registry.get("claim-a").phase == PHASE_LOST
    assert binder.bind("claim-a").status == OUTCOME_LOST
    assert pool.get("pv-2").claim_name is None
    assert binder.bindings() == []


def test_release_of_lost_claim_removes_it_without_touching_pool() -> None:
    pool, registry, binder = _components()
    pool.register(_volume("pv-1"))
    pool.register(_volume("pv-2", capacity_gi=2))
    _submit_and_bind(registry, binder, _claim("claim-a"))
    binder.volume_lost("pv-1")

    released = registry.release("claim-a")

    assert released.volume_name is None
    assert "claim-a" not in registry
    assert pool.get("pv-2").claim_name is None


def test_volume_lost_with_unbound_volume_removes_it_and_returns_none() -> None:
    pool, _, binder = _components()
    pool.register(_volume("pv-1"))

    assert binder.volume_lost("pv-1") is None
    assert "pv-1" not in pool
    with pytest.raises(VolumeNotFound):
        binder.volume_lost("pv-1")


def test_binding_listeners_receive_bound_released_and_lost_events() -> None:
    pool, registry, binder = _components()
    events: list[BindingEvent] = []
    binder.add_binding_listener(events.append)
    pool.register(_volume("pv-1"))
    pool.register(_volume("pv-2"))
    _submit_and_bind(registry, binder, _claim("claim-a"))
    _submit_and_bind(registry, binder, _claim("claim-b"))

    registry.release("claim-a")
    binder.volume_lost("pv-2")

    assert [(event.event, event.claim_name, event.volume_name) for event in events] == [
        (EVENT_BOUND, "claim-a", "pv-1"),
        (EVENT_BOUND, "claim-b", "pv-2"),
        (EVENT_RELEASED, "claim-a", "pv-1"),
        (EVENT_LOST, "claim-b", "pv-2"),
    ]


def test_randomized_lifecycle_preserves_binding_invariants() -> None:
    pool, registry, binder = _components()
    rng = random.Random(7)
    modes = [(READ_WRITE_ONCE,), (READ_WRITE_MANY,), (READ_ONLY_MANY,), (READ_WRITE_ONCE, READ_WRITE_MANY)]
    classes = [None, "fast", "slow"]

    for step in range(300):
        action = rng.random()
        if action < 0.3:
            pool.register(
                _volume(
                    f"pv-{step}",
                    capacity_gi=rng.randint(1, 8),
                    modes=rng.choice(modes),
                    storage_class=rng.choice(classes[1:]),
                )
            )
        elif action < 0.7:
            _submit_and_bind(
                registry,
                binder,
                _claim(
                    f"claim-{step}",
                    requested_gi=rng.randint(1, 8),
                    modes=rng.choice(modes),
                    storage_class=rng.choice(classes),
                ),
            )
        elif action < 0.9 and len(registry):
            registry.release(rng.choice(registry.list_claims()).name)
        elif len(pool):
            binder.volume_lost(rng.choice(pool.list_volumes()).name)
        _assert_binding_invariants(pool, registry, binder)


def test_concurrent_submissions_and_registrations_bind_every_volume_once() -> None:
    pool, registry, binder = _components()

    def _submit(index: int) -> None:
        _submit_and_bind(registry, binder, _claim(f"claim-{index:02d}"))

    def _register(index: int) -> None:
        pool.register(_volume(f"pv-{index:02d}"))

    with ThreadPoolExecutor(max_workers=8) as executor:
        futures = [executor.submit(_submit, index) for index in range(20)]
        futures += [executor.submit(_register, index) for index in range(10)]
        for future in futures:
            future.result()

    _assert_binding_invariants(pool, registry, binder)
    assert len(binder.bindings()) == 10
    assert len(registry.pending()) == 10


def test_concurrent_release_and_reconcile_never_bind_released_claims() -> None:
    pool, registry, binder = _components()
    for index in range(30):
        _submit_and_bind(registry, binder, _claim(f"claim-{index:02d}"))

    def _release(index: int) -> None:
        registry.release(f"claim-{index:02d}")

    def _register(index: int) -> None:
        pool.register(_volume(f"pv-{index:02d}"))

    with ThreadPoolExecutor(max_workers=8) as executor:
        futures = [executor.submit(_release, index) for index in range(0, 30, 2)]
        futures += [executor.submit(_register, index) for index in range(30)]
        for future in futures:
            future.result()

    _assert_binding_invariants(pool, registry, binder)
    bound_claims = {binding.claim_name for binding in binder.bindings()}
    assert all(int(name.split("-")[1]) % 2 == 1 for name in bound_claims)
    assert len(bound_claims) == 15
