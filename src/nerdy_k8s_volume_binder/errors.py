from __future__ import annotations


class VolumeBindingError(RuntimeError):
    """Base class for claim, volume and mount lifecycle failures."""


class DuplicateVolume(VolumeBindingError):
    def __init__(self, volume_name: str) -> None:
        super().__init__(
            f"Volume '{volume_name}' is already registered. Release it before registering it again."
        )
        self.volume_name = volume_name


class VolumeNotFound(VolumeBindingError):
    def __init__(self, volume_name: str) -> None:
        super().__init__(f"Volume '{volume_name}' is not registered in the pool.")
        self.volume_name = volume_name


class VolumeBound(VolumeBindingError):
    def __init__(self, volume_name: str, claim_name: str) -> None:
        super().__init__(
            f"Volume '{volume_name}' is still bound to claim '{claim_name}'. Release the claim first."
        )
        self.volume_name = volume_name
        self.claim_name = claim_name


class DuplicateClaim(VolumeBindingError):
    def __init__(self, claim_name: str) -> None:
        super().__init__(
            f"Claim '{claim_name}' has already been submitted. Release it before submitting it again."
        )
        self.claim_name = claim_name


class ClaimNotFound(VolumeBindingError):
    def __init__(self, claim_name: str) -> None:
        super().__init__(f"Claim '{claim_name}' is not known to the registry.")
        self.claim_name = claim_name


class ClaimMounted(VolumeBindingError):
    def __init__(self, claim_name: str, mount_count: int) -> None:
        super().__init__(
            f"Claim '{claim_name}' is referenced by {mount_count} live mount(s). "
            "Release the mounts before releasing the claim."
        )
        self.claim_name = claim_name
        self.mount_count = mount_count


class ClaimNotBound(VolumeBindingError):
    def __init__(self, claim_name: str, phase: str | None = None) -> None:
        state = f"is {phase}" if phase else "does not exist"
        super().__init__(f"Claim '{claim_name}' {state}; mounts are only served for Bound claims.")
        self.claim_name = claim_name
        self.phase = phase


class ClaimLost(ClaimNotBound):
    """The claim's volume was destroyed; the claim must be released explicitly."""

    def __init__(self, claim_name: str) -> None:
        super().__init__(claim_name, "Lost")


class ManifestError(VolumeBindingError):
    """Raised when a declarative descriptor is structurally invalid."""


class InvalidQuantity(ValueError):
    def __init__(self, value: object, reason: str) -> None:
        super().__init__(f"Invalid storage quantity {value!r}: {reason}.")
        self.value = value
        self.reason = reason
