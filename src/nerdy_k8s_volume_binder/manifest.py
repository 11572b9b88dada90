from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

import yaml

from .errors import InvalidQuantity, ManifestError
from .models import (
    ACCESS_MODE_ALIASES,
    ACCESS_MODES,
    RECLAIM_DELETE,
    RECLAIM_RETAIN,
    Claim,
    Volume,
    WorkloadDescriptor,
    WorkloadMount,
)
from .quantity import parse_quantity

# Recycle returns the volume to the pool, which is what Retain does here.
_RECLAIM_POLICY_ALIASES = {
    "retain": RECLAIM_RETAIN,
    "recycle": RECLAIM_RETAIN,
    "delete": RECLAIM_DELETE,
}


@dataclass(frozen=True)
class ManifestBundle:
    volumes: tuple[Volume, ...] = ()
    claims: tuple[Claim, ...] = ()
    workloads: tuple[WorkloadDescriptor, ...] = ()
    skipped: tuple[str, ...] = ()


def parse_access_modes(values: Any, *, owner: str) -> frozenset[str]:
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, (list, tuple, set, frozenset)) or not values:
        raise ManifestError(f"{owner} must declare at least one access mode.")

    modes: set[str] = set()
    for value in values:
        mode = ACCESS_MODE_ALIASES.get(str(value).strip(), str(value).strip())
        if mode not in ACCESS_MODES:
            supported = ", ".join(sorted(ACCESS_MODES))
            raise ManifestError(f"{owner} has unsupported access mode '{value}'. Supported modes: {supported}.")
        modes.add(mode)
    return frozenset(modes)


def parse_reclaim_policy(value: Any, *, owner: str) -> str:
    if value is None:
        return RECLAIM_RETAIN
    policy = _RECLAIM_POLICY_ALIASES.get(str(value).strip().lower())
    if policy is None:
        raise ManifestError(f"{owner} has unsupported reclaim policy '{value}'. Use Retain or Delete.")
    return policy


def claim_from_descriptor(descriptor: dict[str, Any], *, name: str | None = None) -> Claim:
    """Build a claim from ``{accessModes, requestedStorage, storageClass?}``."""
    claim_name = _required_name(name or descriptor.get("name"), kind="Claim descriptor")
    owner = f"Claim '{claim_name}'"
    modes = descriptor.get("accessModes", descriptor.get("accessMode"))
    return Claim(
        name=claim_name,
        requested_bytes=_quantity(descriptor.get("requestedStorage"), owner=owner, field="requestedStorage"),
        access_modes=parse_access_modes(modes, owner=owner),
        storage_class=_optional_label(descriptor.get("storageClass")),
    )


def volume_from_descriptor(descriptor: dict[str, Any], *, name: str | None = None) -> Volume:
    volume_name = _required_name(name or descriptor.get("name"), kind="Volume descriptor")
    owner = f"Volume '{volume_name}'"
    return Volume(
        name=volume_name,
        capacity_bytes=_quantity(descriptor.get("capacity"), owner=owner, field="capacity"),
        access_modes=parse_access_modes(descriptor.get("accessModes"), owner=owner),
        storage_class=_optional_label(descriptor.get("storageClass")),
        reclaim_policy=parse_reclaim_policy(descriptor.get("reclaimPolicy"), owner=owner),
        mount_options=_string_tuple(descriptor.get("mountOptions")),
    )


def workload_from_descriptor(descriptor: dict[str, Any], *, name: str | None = None) -> WorkloadDescriptor:
    workload_name = _required_name(name or descriptor.get("name"), kind="Workload descriptor")
    raw_mounts = descriptor.get("mounts") or []
    if not isinstance(raw_mounts, list):
        raise ManifestError(f"Workload '{workload_name}' mounts must be a list.")

    mounts: list[WorkloadMount] = []
    for index, raw_mount in enumerate(raw_mounts):
        if not isinstance(raw_mount, dict):
            raise ManifestError(f"Workload '{workload_name}' mount #{index} must be a mapping.")
        volume_ref = str(raw_mount.get("volumeRef") or "").strip()
        path = str(raw_mount.get("path") or "").strip()
        if not volume_ref or not path:
            raise ManifestError(f"Workload '{workload_name}' mount #{index} requires volumeRef and path.")
        mounts.append(WorkloadMount(volume_ref=volume_ref, path=path))
    return WorkloadDescriptor(name=workload_name, mounts=tuple(mounts))


def volume_from_manifest(document: dict[str, Any]) -> Volume:
    metadata = document.get("metadata") or {}
    spec = document.get("spec") or {}
    name = _required_name(metadata.get("name"), kind="PersistentVolume")
    capacity = (spec.get("capacity") or {}).get("storage")
    return volume_from_descriptor(
        {
            "capacity": capacity,
            "accessModes": spec.get("accessModes"),
            "storageClass": spec.get("storageClassName"),
            "reclaimPolicy": spec.get("persistentVolumeReclaimPolicy"),
            "mountOptions": spec.get("mountOptions"),
        },
        name=name,
    )


def claim_from_manifest(document: dict[str, Any]) -> Claim:
    metadata = document.get("metadata") or {}
    spec = document.get("spec") or {}
    name = qualified_name(metadata.get("namespace"), _required_name(metadata.get("name"), kind="PersistentVolumeClaim"))
    return claim_from_descriptor(_claim_fields(spec), name=name)


def workload_from_manifest(document: dict[str, Any]) -> WorkloadDescriptor:
    metadata = document.get("metadata") or {}
    spec = document.get("spec") or {}
    namespace = metadata.get("namespace")
    name = qualified_name(namespace, _required_name(metadata.get("name"), kind="Pod"))
    claim_by_volume = _claim_names_by_volume(spec, namespace)
    return workload_from_descriptor({"mounts": _pod_mounts(spec, claim_by_volume)}, name=name)


def statefulset_from_manifest(document: dict[str, Any]) -> tuple[tuple[Claim, ...], tuple[WorkloadDescriptor, ...]]:
    """Expand a StatefulSet into the claims and pods its controller would create.

    Each ``volumeClaimTemplates`` entry yields one claim per replica named
    ``<template>-<statefulset>-<ordinal>``, and pod ``<statefulset>-<ordinal>``
    mounts its own copy of every template.
    """
    metadata = document.get("metadata") or {}
    spec = document.get("spec") or {}
    namespace = metadata.get("namespace")
    statefulset_name = _required_name(metadata.get("name"), kind="StatefulSet")
    owner = f"StatefulSet '{statefulset_name}'"

    replicas = spec.get("replicas", 1)
    if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
        raise ManifestError(f"{owner} replicas must be a non-negative integer.")

    raw_templates = spec.get("volumeClaimTemplates") or []
    if not isinstance(raw_templates, list):
        raise ManifestError(f"{owner} volumeClaimTemplates must be a list.")
    templates: list[tuple[str, dict[str, Any]]] = []
    for index, template in enumerate(raw_templates):
        if not isinstance(template, dict):
            raise ManifestError(f"{owner} volumeClaimTemplates #{index} must be a mapping.")
        template_name = _required_name((template.get("metadata") or {}).get("name"), kind=f"{owner} volumeClaimTemplate")
        templates.append((template_name, template.get("spec") or {}))

    pod_spec = (spec.get("template") or {}).get("spec") or {}
    claims: list[Claim] = []
    workloads: list[WorkloadDescriptor] = []
    for ordinal in range(replicas):
        pod_name = f"{statefulset_name}-{ordinal}"
        claim_by_volume = _claim_names_by_volume(pod_spec, namespace)
        for template_name, template_spec in templates:
            claim_name = qualified_name(namespace, f"{template_name}-{pod_name}")
            claims.append(claim_from_descriptor(_claim_fields(template_spec), name=claim_name))
            claim_by_volume[template_name] = claim_name
        workloads.append(
            workload_from_descriptor(
                {"mounts": _pod_mounts(pod_spec, claim_by_volume)},
                name=qualified_name(namespace, pod_name),
            )
        )
    return tuple(claims), tuple(workloads)


def load_manifests(text: str) -> ManifestBundle:
    try:
        documents = [document for document in yaml.safe_load_all(text) if document is not None]
    except yaml.YAMLError as error:
        raise ManifestError(f"Manifest must be valid YAML: {error.__class__.__name__}.") from error
    return bundle_from_documents(documents)


def bundle_from_documents(documents: Iterable[Any]) -> ManifestBundle:
    volumes: list[Volume] = []
    claims: list[Claim] = []
    workloads: list[WorkloadDescriptor] = []
    skipped: list[str] = []

    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ManifestError(f"Manifest document #{index} must be a YAML mapping.")
        kind = document.get("kind")
        if kind == "PersistentVolume":
            volumes.append(volume_from_manifest(document))
        elif kind == "PersistentVolumeClaim":
            claims.append(claim_from_manifest(document))
        elif kind == "Pod":
            workloads.append(workload_from_manifest(document))
        elif kind == "StatefulSet":
            template_claims, replica_workloads = statefulset_from_manifest(document)
            claims.extend(template_claims)
            workloads.extend(replica_workloads)
        else:
            name = (document.get("metadata") or {}).get("name", "<unnamed>")
            skipped.append(f"{kind or 'Unknown'}/{name}")

    return ManifestBundle(
        volumes=tuple(volumes),
        claims=tuple(claims),
        workloads=tuple(workloads),
        skipped=tuple(skipped),
    )


def qualified_name(namespace: str | None, name: str) -> str:
    namespace = (namespace or "").strip()
    return f"{namespace}/{name}" if namespace else name


def _quantity(value: Any, *, owner: str, field: str) -> int:
    if value is None:
        raise ManifestError(f"{owner} is missing required field '{field}'.")
    try:
        return parse_quantity(value)
    except InvalidQuantity as error:
        raise InvalidQuantity(value, f"{owner} field '{field}': {error.reason}") from error


def _required_name(value: Any, *, kind: str) -> str:
    name = str(value or "").strip()
    if not name:
        raise ManifestError(f"{kind} requires a non-empty name.")
    return name


def _optional_label(value: Any) -> str | None:
    label = str(value).strip() if value is not None else ""
    return label or None


def _string_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def _claim_fields(spec: dict[str, Any]) -> dict[str, Any]:
    requests = (spec.get("resources") or {}).get("requests") or {}
    return {
        "accessModes": spec.get("accessModes"),
        "requestedStorage": requests.get("storage"),
        "storageClass": spec.get("storageClassName"),
    }


def _claim_names_by_volume(pod_spec: dict[str, Any], namespace: str | None) -> dict[str, str]:
    claim_by_volume: dict[str, str] = {}
    for volume in pod_spec.get("volumes") or []:
        volume = volume or {}
        claim_source = volume.get("persistentVolumeClaim") or {}
        if volume.get("name") and claim_source.get("claimName"):
            claim_by_volume[volume["name"]] = qualified_name(namespace, claim_source["claimName"])
    return claim_by_volume


def _pod_mounts(pod_spec: dict[str, Any], claim_by_volume: dict[str, str]) -> list[dict[str, str]]:
    mounts: list[dict[str, str]] = []
    for container in (pod_spec.get("initContainers") or []) + (pod_spec.get("containers") or []):
        for volume_mount in (container or {}).get("volumeMounts") or []:
            claim_name = claim_by_volume.get(volume_mount.get("name", ""))
            if claim_name is None:
                continue
            mount = {"volumeRef": claim_name, "path": volume_mount.get("mountPath", "")}
            if mount not in mounts:
                mounts.append(mount)
    return mounts
