from __future__ import annotations

from dataclasses import replace
import heapq
import itertools
import logging
import threading
from typing import Callable, Iterable, Iterator

from .errors import DuplicateVolume, VolumeBound, VolumeNotFound
from .models import ACCESS_MODES, RECLAIM_POLICIES, Volume
from .quantity import format_quantity

logger = logging.getLogger(__name__)

VolumeListener = Callable[[Volume], None]


class VolumePool:
    """Volumes offered by the infrastructure, keyed by name.

    Binding state on a volume is written only by the Binder through ``assign``,
    ``unassign`` and ``evict``; everything else treats the pool as read-only.
    """

    def __init__(self, *, lock: threading.RLock | None = None) -> None:
        self.lock = lock if lock is not None else threading.RLock()
        self._volumes: dict[str, Volume] = {}
        self._registration_order: dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._register_listeners: list[VolumeListener] = []

    def __len__(self) -> int:
        with self.lock:
            return len(self._volumes)

    def __contains__(self, volume_name: object) -> bool:
        with self.lock:
            return volume_name in self._volumes

    def add_register_listener(self, listener: VolumeListener) -> None:
        self._register_listeners.append(listener)

    def register(self, volume: Volume) -> Volume:
        _validate_volume(volume)
        with self.lock:
            if volume.name in self._volumes:
                raise DuplicateVolume(volume.name)
            stored = replace(volume, access_modes=frozenset(volume.access_modes), claim_name=None)
            self._volumes[stored.name] = stored
            self._registration_order[stored.name] = next(self._sequence)

        logger.info(
            "Registered volume %s (%s, modes=%s, class=%s)",
            stored.name,
            format_quantity(stored.capacity_bytes),
            ",".join(sorted(stored.access_modes)),
            stored.storage_class or "<none>",
        )
        for listener in list(self._register_listeners):
            listener(stored)
        return stored

    def get(self, volume_name: str) -> Volume:
        with self.lock:
            volume = self._volumes.get(volume_name)
        if volume is None:
            raise VolumeNotFound(volume_name)
        return volume

    def lookup(self, volume_name: str) -> Volume | None:
        with self.lock:
            return self._volumes.get(volume_name)

    def list_volumes(self) -> list[Volume]:
        with self.lock:
            return sorted(self._volumes.values(), key=lambda volume: self._registration_order[volume.name])

    def find(
        self,
        storage_class: str | None = None,
        min_capacity: int = 0,
        access_modes: Iterable[str] = (),
    ) -> Iterator[Volume]:
        """Yield unbound volumes that can satisfy the request, smallest capacity first.

        ``storage_class=None`` places no class restriction; any other value must
        match the volume's class label exactly.
        """
        required_modes = frozenset(access_modes)
        with self.lock:
            candidates = [
                (volume.capacity_bytes, self._registration_order[volume.name], volume)
                for volume in self._volumes.values()
                if volume.claim_name is None
                and volume.capacity_bytes >= min_capacity
                and required_modes <= volume.access_modes
                and (storage_class is None or volume.storage_class == storage_class)
            ]
        heapq.heapify(candidates)
        while candidates:
            yield heapq.heappop(candidates)[2]

    def release(self, volume_name: str) -> Volume:
        with self.lock:
            volume = self.get(volume_name)
            if volume.claim_name is not None:
                raise VolumeBound(volume_name, volume.claim_name)
            self._remove(volume_name)

        logger.info("Released volume %s from the pool", volume_name)
        return volume

    def assign(self, volume_name: str, claim_name: str) -> Volume:
        with self.lock:
            volume = self.get(volume_name)
            if volume.claim_name is not None and volume.claim_name != claim_name:
                raise VolumeBound(volume_name, volume.claim_name)
            updated = replace(volume, claim_name=claim_name)
            self._volumes[volume_name] = updated
        return updated

    def unassign(self, volume_name: str) -> Volume:
        with self.lock:
            updated = replace(self.get(volume_name), claim_name=None)
            self._volumes[volume_name] = updated
        return updated

    def evict(self, volume_name: str) -> Volume:
        with self.lock:
            volume = self.get(volume_name)
            self._remove(volume_name)
        return volume

    def _remove(self, volume_name: str) -> None:
        del self._volumes[volume_name]
        del self._registration_order[volume_name]


def _validate_volume(volume: Volume) -> None:
    if not volume.name or not volume.name.strip():
        raise ValueError("volume name must not be empty")
    if volume.capacity_bytes < 0:
        raise ValueError("volume capacity_bytes must be >= 0")
    if not volume.access_modes:
        raise ValueError(f"volume '{volume.name}' must support at least one access mode")
    unknown_modes = sorted(frozenset(volume.access_modes) - ACCESS_MODES)
    if unknown_modes:
        raise ValueError(f"volume '{volume.name}' has unknown access mode(s): {', '.join(unknown_modes)}")
    if volume.reclaim_policy not in RECLAIM_POLICIES:
        raise ValueError(f"volume '{volume.name}' has unknown reclaim policy '{volume.reclaim_policy}'")
