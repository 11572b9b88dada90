from __future__ import annotations

from dataclasses import replace
import itertools
import logging
import threading
from typing import Callable

from .errors import ClaimNotFound, DuplicateClaim
from .models import ACCESS_MODES, PHASE_BOUND, PHASE_LOST, PHASE_PENDING, PHASE_RELEASED, Claim
from .quantity import format_quantity

logger = logging.getLogger(__name__)

ClaimCallback = Callable[[Claim], None]


class ClaimRegistry:
    """Claims submitted by workloads, in submission order.

    Releasing a claim runs three kinds of callbacks: guards may veto the
    release by raising, hooks run after every guard passed (both inside the
    state lock), and listeners run once the claim is gone and the lock is free.
    """

    def __init__(self, *, lock: threading.RLock | None = None) -> None:
        self.lock = lock if lock is not None else threading.RLock()
        self._claims: dict[str, Claim] = {}
        self._sequence = itertools.count(1)
        self._release_guards: list[ClaimCallback] = []
        self._release_hooks: list[ClaimCallback] = []
        self._release_listeners: list[ClaimCallback] = []

    def __len__(self) -> int:
        with self.lock:
            return len(self._claims)

    def __contains__(self, claim_name: object) -> bool:
        with self.lock:
            return claim_name in self._claims

    def add_release_guard(self, guard: ClaimCallback) -> None:
        self._release_guards.append(guard)

    def add_release_hook(self, hook: ClaimCallback) -> None:
        self._release_hooks.append(hook)

    def add_release_listener(self, listener: ClaimCallback) -> None:
        self._release_listeners.append(listener)

    def submit(self, claim: Claim) -> Claim:
        _validate_claim(claim)
        with self.lock:
            if claim.name in self._claims:
                raise DuplicateClaim(claim.name)
            stored = replace(
                claim,
                access_modes=frozenset(claim.access_modes),
                phase=PHASE_PENDING,
                volume_name=None,
                sequence=next(self._sequence),
            )
            self._claims[stored.name] = stored

        logger.info(
            "Submitted claim %s (%s, modes=%s, class=%s)",
            stored.name,
            format_quantity(stored.requested_bytes),
            ",".join(sorted(stored.access_modes)),
            stored.storage_class or "<any>",
        )
        return stored

    def get(self, claim_name: str) -> Claim:
        with self.lock:
            claim = self._claims.get(claim_name)
        if claim is None:
            raise ClaimNotFound(claim_name)
        return claim

    def lookup(self, claim_name: str) -> Claim | None:
        with self.lock:
            return self._claims.get(claim_name)

    def list_claims(self) -> list[Claim]:
        with self.lock:
            return sorted(self._claims.values(), key=lambda claim: claim.sequence)

    def pending(self) -> list[Claim]:
        return [claim for claim in self.list_claims() if claim.phase == PHASE_PENDING]

    def release(self, claim_name: str) -> Claim:
        with self.lock:
            claim = self.get(claim_name)
            for guard in self._release_guards:
                guard(claim)
            for hook in self._release_hooks:
                hook(claim)
            del self._claims[claim_name]

        previous_volume = claim.volume_name if claim.phase == PHASE_BOUND else None
        released = replace(claim, phase=PHASE_RELEASED, volume_name=previous_volume)
        logger.info("Released claim %s (was %s)", claim_name, claim.phase)
        for listener in list(self._release_listeners):
            listener(released)
        return released

    def assign(self, claim_name: str, volume_name: str) -> Claim:
        return self._update(claim_name, phase=PHASE_BOUND, volume_name=volume_name)

    def unassign(self, claim_name: str) -> Claim:
        return self._update(claim_name, phase=PHASE_PENDING, volume_name=None)

    def mark_lost(self, claim_name: str) -> Claim:
        return self._update(claim_name, phase=PHASE_LOST)

    def _update(self, claim_name: str, **changes: str | None) -> Claim:
        with self.lock:
            updated = replace(self.get(claim_name), **changes)
            self._claims[claim_name] = updated
        return updated


def _validate_claim(claim: Claim) -> None:
    if not claim.name or not claim.name.strip():
        raise ValueError("claim name must not be empty")
    if claim.requested_bytes < 0:
        raise ValueError("claim requested_bytes must be >= 0")
    if not claim.access_modes:
        raise ValueError(f"claim '{claim.name}' must request at least one access mode")
    unknown_modes = sorted(frozenset(claim.access_modes) - ACCESS_MODES)
    if unknown_modes:
        raise ValueError(f"claim '{claim.name}' has unknown access mode(s): {', '.join(unknown_modes)}")
