from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import tempfile
from typing import Any, Callable, Iterable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import InvalidQuantity, ManifestError
from .manifest import (
    ManifestBundle,
    claim_from_descriptor,
    qualified_name,
    volume_from_descriptor,
    workload_from_descriptor,
)
from .models import Claim, Volume, WorkloadDescriptor

DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 20
DEFAULT_MAX_NAMESPACE_SCAN = 100
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesDiscoveryError(RuntimeError):
    """Raised when storage discovery cannot safely continue."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(api_client=api_client, core_api=client.CoreV1Api(api_client))


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _ = config.list_kube_config_contexts(config_file=expanded)
    except Exception as error:  # pylint: disable=broad-except
        reason = str(error).strip() or error.__class__.__name__
        source = expanded or "default kubeconfig search path"
        raise KubernetesAuthenticationError(
            f"Unable to list kubeconfig contexts from '{source}': {reason}. "
            "Verify the kubeconfig path is readable and valid."
        ) from error
    if not contexts:
        return []
    return sorted(context["name"] for context in contexts)


def get_cluster_summary(clients: KubernetesClients) -> dict[str, int]:
    return {
        "namespaces": len(clients.core_api.list_namespace().items),
        "persistent_volumes": len(clients.core_api.list_persistent_volume().items),
        "persistent_volume_claims": len(clients.core_api.list_persistent_volume_claim_for_all_namespaces().items),
        "pods": len(clients.core_api.list_pod_for_all_namespaces().items),
    }


def discover_storage(
    clients: KubernetesClients,
    *,
    namespaces: Iterable[str] | None = None,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
    max_namespace_scan: int = DEFAULT_MAX_NAMESPACE_SCAN,
) -> ManifestBundle:
    """Read PVs, PVCs and PVC-consuming Pods into a bundle the controller can apply."""
    if request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")
    if max_namespace_scan <= 0:
        raise ValueError("max_namespace_scan must be positive")

    pv_items = _safe_kubernetes_discovery_call(
        operation="list PersistentVolumes",
        hint="Verify RBAC verbs for persistentvolumes (cluster-scoped list).",
        func=lambda: clients.core_api.list_persistent_volume(_request_timeout=request_timeout_seconds).items,
    )

    target_namespaces = sorted({namespace.strip() for namespace in namespaces or [] if namespace and namespace.strip()})
    if target_namespaces:
        if len(target_namespaces) > max_namespace_scan:
            raise KubernetesDiscoveryError(
                f"Requested scan for {len(target_namespaces)} namespaces, which exceeds the configured limit "
                f"({max_namespace_scan}). Reduce the namespace filter size or increase the limit."
            )

        pvc_items: list[client.V1PersistentVolumeClaim] = []
        pod_items: list[client.V1Pod] = []
        for namespace in target_namespaces:
            pvc_items.extend(
                _safe_kubernetes_discovery_call(
                    operation=f"list PVCs in namespace '{namespace}'",
                    hint=(
                        "Check namespace spelling, API reachability, and RBAC verbs for "
                        "persistentvolumeclaims."
                    ),
                    func=lambda namespace=namespace: clients.core_api.list_namespaced_persistent_volume_claim(
                        namespace=namespace,
                        _request_timeout=request_timeout_seconds,
                    ).items,
                )
            )
            pod_items.extend(
                _safe_kubernetes_discovery_call(
                    operation=f"list Pods in namespace '{namespace}'",
                    hint="Check RBAC verbs for pods and confirm the namespace still exists.",
                    func=lambda namespace=namespace: clients.core_api.list_namespaced_pod(
                        namespace=namespace,
                        _request_timeout=request_timeout_seconds,
                    ).items,
                )
            )
    else:
        namespace_count = len(
            _safe_kubernetes_discovery_call(
                operation="list namespaces for discovery preflight",
                hint="Confirm cluster connectivity and RBAC verbs for namespaces.",
                func=lambda: clients.core_api.list_namespace(_request_timeout=request_timeout_seconds).items,
            )
        )
        if namespace_count > max_namespace_scan:
            raise KubernetesDiscoveryError(
                f"Cluster has {namespace_count} namespaces, exceeding the configured discovery limit "
                f"({max_namespace_scan}). Apply a namespace filter or increase the limit."
            )

        pvc_items = _safe_kubernetes_discovery_call(
            operation="list PVCs across all namespaces",
            hint=(
                "Apply a namespace filter for large clusters or verify RBAC verbs for "
                "persistentvolumeclaims."
            ),
            func=lambda: clients.core_api.list_persistent_volume_claim_for_all_namespaces(
                _request_timeout=request_timeout_seconds
            ).items,
        )
        pod_items = _safe_kubernetes_discovery_call(
            operation="list Pods across all namespaces",
            hint="Apply a namespace filter for large clusters or verify RBAC verbs for pods.",
            func=lambda: clients.core_api.list_pod_for_all_namespaces(_request_timeout=request_timeout_seconds).items,
        )

    volumes: list[Volume] = []
    claims: list[Claim] = []
    workloads: list[WorkloadDescriptor] = []
    skipped: list[str] = []

    for pv in pv_items:
        name = pv.metadata.name if pv.metadata else None
        try:
            volumes.append(_volume_from_pv(pv))
        except (InvalidQuantity, ManifestError) as error:
            skipped.append(f"PersistentVolume/{name or '<unnamed>'}: {error}")

    for pvc in pvc_items:
        name = pvc.metadata.name if pvc.metadata else None
        try:
            claims.append(_claim_from_pvc(pvc))
        except (InvalidQuantity, ManifestError) as error:
            skipped.append(f"PersistentVolumeClaim/{name or '<unnamed>'}: {error}")

    for pod in pod_items:
        try:
            workload = _workload_from_pod(pod)
        except ManifestError as error:
            name = pod.metadata.name if pod.metadata else None
            skipped.append(f"Pod/{name or '<unnamed>'}: {error}")
            continue
        if workload is not None and workload.mounts:
            workloads.append(workload)

    volumes.sort(key=lambda item: item.name)
    claims.sort(key=lambda item: item.name)
    workloads.sort(key=lambda item: item.name)
    if skipped:
        logger.warning("Skipped %d storage object(s) during discovery", len(skipped))
    return ManifestBundle(
        volumes=tuple(volumes),
        claims=tuple(claims),
        workloads=tuple(workloads),
        skipped=tuple(skipped),
    )


def _volume_from_pv(pv: client.V1PersistentVolume) -> Volume:
    spec = pv.spec
    return volume_from_descriptor(
        {
            "capacity": (spec.capacity or {}).get("storage") if spec else None,
            "accessModes": list(spec.access_modes or []) if spec else [],
            "storageClass": spec.storage_class_name if spec else None,
            "reclaimPolicy": spec.persistent_volume_reclaim_policy if spec else None,
            "mountOptions": list(spec.mount_options or []) if spec else [],
        },
        name=pv.metadata.name if pv.metadata else None,
    )


def _claim_from_pvc(pvc: client.V1PersistentVolumeClaim) -> Claim:
    spec = pvc.spec
    requests: dict[str, Any] = {}
    if spec and spec.resources and spec.resources.requests:
        requests = spec.resources.requests
    namespace = pvc.metadata.namespace if pvc.metadata else None
    name = pvc.metadata.name if pvc.metadata else None
    return claim_from_descriptor(
        {
            "accessModes": list(spec.access_modes or []) if spec else [],
            "requestedStorage": requests.get("storage"),
            "storageClass": spec.storage_class_name if spec else None,
        },
        name=qualified_name(namespace, name) if name else None,
    )


def _workload_from_pod(pod: client.V1Pod) -> WorkloadDescriptor | None:
    namespace = pod.metadata.namespace if pod.metadata else None
    pod_name = pod.metadata.name if pod.metadata else None
    if not namespace or not pod_name or not pod.spec:
        return None

    claim_by_volume: dict[str, str] = {}
    for volume in pod.spec.volumes or []:
        pvc_source = volume.persistent_volume_claim
        if not pvc_source or not pvc_source.claim_name:
            continue
        claim_by_volume[volume.name] = qualified_name(namespace, pvc_source.claim_name)

    mounts: list[dict[str, str]] = []
    for container in list(pod.spec.init_containers or []) + list(pod.spec.containers or []):
        for volume_mount in container.volume_mounts or []:
            claim_name = claim_by_volume.get(volume_mount.name)
            if claim_name is None:
                continue
            mount = {"volumeRef": claim_name, "path": volume_mount.mount_path}
            if mount not in mounts:
                mounts.append(mount)

    return workload_from_descriptor({"mounts": mounts}, name=qualified_name(namespace, pod_name))


def _safe_kubernetes_discovery_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise KubernetesDiscoveryError(
            f"Kubernetes discovery failed while trying to {operation}: {error}. {hint}"
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes discovery failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
