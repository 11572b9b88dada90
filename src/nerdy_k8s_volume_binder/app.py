from __future__ import annotations

from pathlib import Path
from typing import Any
import os

import streamlit as st
import yaml

from nerdy_k8s_volume_binder.config import AppConfig, configure_logging, ensure_directories
from nerdy_k8s_volume_binder.controller import ApplyResult, VolumeBindingController
from nerdy_k8s_volume_binder.errors import VolumeBindingError
from nerdy_k8s_volume_binder.history import BindingHistoryStore
from nerdy_k8s_volume_binder.k8s import (
    KubernetesDiscoveryError,
    discover_storage,
    get_cluster_summary,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from nerdy_k8s_volume_binder.models import PHASE_BOUND, PHASE_LOST, Binding, Claim, MountHandle, Volume
from nerdy_k8s_volume_binder.quantity import format_quantity

_SOURCE_PASTE_MANIFEST = "Paste manifests"
_SOURCE_CLUSTER_DISCOVERY = "Cluster discovery"

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_ERROR_HINTS: tuple[tuple[str, str], ...] = (
    (
        "live mount",
        "Release the listed mounts first, then release the claim again.",
    ),
    (
        "mounts are only served for Bound claims",
        "Register a volume that satisfies the claim's size, access modes, and class.",
    ),
    (
        "is still bound to claim",
        "Release the claim that owns the volume before removing the volume.",
    ),
    (
        "already been submitted",
        "Re-applying a manifest is safe; existing claims keep their current binding.",
    ),
    (
        "already registered",
        "Re-applying a manifest is safe; existing volumes keep their current binding.",
    ),
    (
        "Invalid storage quantity",
        "Use a whole byte count with an optional suffix such as Ki, Mi, Gi, or G.",
    ),
)

_EXAMPLE_MANIFEST = """apiVersion: v1
kind: PersistentVolume
metadata:
  name: local-pv-01
spec:
  capacity:
    storage: 1Gi
  accessModes:
    - ReadWriteOnce
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: my-pvc
spec:
  accessModes:
    - ReadWriteOnce
  resources:
    requests:
      storage: 1Gi
---
apiVersion: v1
kind: Pod
metadata:
  name: my-storage-pod
spec:
  containers:
  - name: busybox-container
    image: busybox:latest
    volumeMounts:
    - name: my-storage
      mountPath: /data
  volumes:
  - name: my-storage
    persistentVolumeClaim:
      claimName: my-pvc
"""


def _initialize_state() -> None:
    defaults = {
        "controller": None,
        "last_apply_result": None,
        "connected": False,
        "clients": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_volume_rows(volumes: list[Volume]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for volume in volumes:
        rows.append(
            {
                "volume": volume.name,
                "capacity": format_quantity(volume.capacity_bytes),
                "access_modes": ",".join(sorted(volume.access_modes)),
                "storage_class": volume.storage_class or "none",
                "reclaim_policy": volume.reclaim_policy,
                "claim": volume.claim_name or "available",
            }
        )
    return rows


def _build_claim_rows(claims: list[Claim]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for claim in claims:
        if claim.phase == PHASE_BOUND:
            note = f"Bound to {claim.volume_name}."
        elif claim.phase == PHASE_LOST:
            note = "Volume was destroyed. Release this claim explicitly."
        else:
            note = "Waiting for capacity."
        rows.append(
            {
                "claim": claim.name,
                "phase": claim.phase,
                "requested": format_quantity(claim.requested_bytes),
                "access_modes": ",".join(sorted(claim.access_modes)),
                "storage_class": claim.storage_class or "any",
                "volume": claim.volume_name or "",
                "note": note,
            }
        )
    return rows


def _build_binding_rows(bindings: list[Binding]) -> list[dict[str, str]]:
    return [
        {"claim": binding.claim_name, "volume": binding.volume_name, "bound_at": binding.bound_at}
        for binding in bindings
    ]


def _build_mount_rows(mounts: list[MountHandle]) -> list[dict[str, str]]:
    return [
        {
            "workload": handle.workload,
            "claim": handle.claim_name,
            "path": handle.path,
            "volume": handle.volume_name,
            "mount_options": ",".join(handle.mount_options),
            "handle": handle.handle_id,
        }
        for handle in sorted(mounts, key=lambda item: (item.workload, item.path))
    ]


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        rendered_rows.append(
            {
                "event": str(row.get("event", "")),
                "claim": str(row.get("claim_name", "")),
                "volume": str(row.get("volume_name", "") or ""),
                "workload": str(row.get("workload", "") or ""),
                "path": str(row.get("mount_path", "") or ""),
                "message": str(row.get("message", "") or ""),
                "created_at": str(row.get("created_at", "")),
            }
        )
    return rendered_rows


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for marker, hint in _ERROR_HINTS:
        if marker in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Review the claim, volume, and mount state tables for more detail."


def _summarize_apply_result(result: ApplyResult) -> dict[str, int]:
    return {
        "volumes_registered": len(result.volumes),
        "claims_bound": sum(1 for outcome in result.outcomes if outcome.is_bound),
        "claims_waiting": sum(1 for outcome in result.outcomes if not outcome.is_bound),
        "mounts_ready": len(result.mounts),
        "problems": len(result.errors),
    }


def _build_workflow_rows(
    *,
    volume_count: int,
    claim_count: int,
    bound_count: int,
    mount_count: int,
) -> list[dict[str, str]]:
    supply_state = "done" if volume_count > 0 else "active"
    claim_state = "done" if claim_count > 0 else "active"
    bind_state = "done" if bound_count > 0 else ("active" if claim_count > 0 and volume_count > 0 else "blocked")
    mount_state = "done" if mount_count > 0 else ("active" if bound_count > 0 else "blocked")

    return [
        {
            "step": "1. Supply",
            "state": _WORKFLOW_STATE_LABELS[supply_state],
            "description": "Register PersistentVolumes from manifests or cluster discovery.",
        },
        {
            "step": "2. Claim",
            "state": _WORKFLOW_STATE_LABELS[claim_state],
            "description": "Submit PersistentVolumeClaims.",
        },
        {
            "step": "3. Bind",
            "state": _WORKFLOW_STATE_LABELS[bind_state],
            "description": "Claims bind to the smallest compatible volume, oldest claim first.",
        },
        {
            "step": "4. Mount",
            "state": _WORKFLOW_STATE_LABELS[mount_state],
            "description": "Workloads mount bound claims at their requested paths.",
        },
    ]


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("NKVB_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to an existing file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        return f"{source_label} is missing required field(s): {', '.join(missing_fields)}."

    return None


def _controller(config: AppConfig) -> VolumeBindingController:
    if st.session_state.controller is None:
        history_store: BindingHistoryStore | None = None
        if config.record_history:
            history_store = BindingHistoryStore(config.history_db_path)
            history_store.initialize()
        st.session_state.controller = VolumeBindingController(history_store=history_store)
    return st.session_state.controller


def _render_apply_result(result: ApplyResult) -> None:
    summary = _summarize_apply_result(result)
    columns = st.columns(len(summary))
    for column, (label, value) in zip(columns, summary.items(), strict=True):
        column.metric(label.replace("_", " ").title(), value)
    for error in result.errors:
        st.error(_actionable_next_step(error))
    if result.skipped:
        st.caption(f"Skipped documents: {', '.join(result.skipped)}")


def _render_cluster_source(config: AppConfig, controller: VolumeBindingController) -> None:
    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio("Authentication", options=auth_options, index=auth_options.index(_default_auth_mode()))
    context = st.sidebar.text_input("Kubernetes context (optional)", value="")

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            kubeconfig_path: str | None = None
            if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
            elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)
            try:
                st.session_state.clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=auth_mode == _AUTH_MODE_IN_CLUSTER,
                )
                st.session_state.connected = True
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to import PersistentVolumes, claims, and pods.")
        return

    clients = st.session_state.clients
    summary = get_cluster_summary(clients)
    summary_columns = st.columns(len(summary))
    for column, (label, value) in zip(summary_columns, summary.items(), strict=True):
        column.metric(label.replace("_", " ").title(), value)

    namespace_filter_input = st.text_input("Namespace filter (comma-separated, optional)", value="")
    namespaces = [value.strip() for value in namespace_filter_input.split(",") if value.strip()]
    if st.button("Import cluster storage"):
        with st.spinner("Collecting PersistentVolumes, claims, and pods..."):
            try:
                bundle = discover_storage(
                    clients,
                    namespaces=namespaces or None,
                    request_timeout_seconds=config.discovery_timeout_seconds,
                    max_namespace_scan=config.max_namespace_scan,
                )
                st.session_state.last_apply_result = controller.apply_bundle(bundle)
            except KubernetesDiscoveryError as error:
                st.error(str(error))
            except ValueError as error:
                st.error(f"Invalid discovery configuration: {error}")


def _render_manifest_source(controller: VolumeBindingController) -> None:
    manifest_text = st.text_area("Manifests (multi-document YAML)", value=_EXAMPLE_MANIFEST, height=320)
    if st.button("Apply manifests", type="primary"):
        try:
            st.session_state.last_apply_result = controller.apply_manifest(manifest_text)
        except (VolumeBindingError, ValueError) as error:
            st.error(_actionable_next_step(str(error)))


def _render_actions(controller: VolumeBindingController) -> None:
    snapshot = controller.snapshot()
    st.subheader("Actions")
    columns = st.columns(3)

    mount_labels = {f"{handle.workload} -> {handle.claim_name} @ {handle.path}": handle for handle in snapshot.mounts}
    selected_mount = columns[0].selectbox("Mount", options=["", *mount_labels])
    if columns[0].button("Release mount") and selected_mount:
        controller.release_mount(mount_labels[selected_mount])
        st.rerun()

    selected_claim = columns[1].selectbox("Claim", options=["", *(claim.name for claim in snapshot.claims)])
    if columns[1].button("Release claim") and selected_claim:
        try:
            controller.release_claim(selected_claim)
            st.rerun()
        except VolumeBindingError as error:
            st.error(_actionable_next_step(str(error)))

    selected_volume = columns[2].selectbox("Volume", options=["", *(volume.name for volume in snapshot.volumes)])
    release_volume = columns[2].button("Release volume")
    mark_destroyed = columns[2].button("Mark volume destroyed")
    if selected_volume and (release_volume or mark_destroyed):
        try:
            if release_volume:
                controller.release_volume(selected_volume)
            else:
                controller.volume_lost(selected_volume)
            st.rerun()
        except VolumeBindingError as error:
            st.error(_actionable_next_step(str(error)))


def main() -> None:
    st.set_page_config(page_title="Nerdy K8s Volume Binder", layout="wide")
    _initialize_state()

    config = AppConfig()
    ensure_directories(config)
    configure_logging(config.log_level)
    controller = _controller(config)

    st.title("Nerdy K8s Volume Binder")
    st.caption("Bind claims to volumes, serve workload mounts, and track binding history.")

    source = st.sidebar.radio("State source", options=[_SOURCE_PASTE_MANIFEST, _SOURCE_CLUSTER_DISCOVERY], index=0)
    if st.sidebar.button("Reset state"):
        st.session_state.controller = None
        st.session_state.last_apply_result = None
        st.rerun()

    if source == _SOURCE_CLUSTER_DISCOVERY:
        _render_cluster_source(config, controller)
    else:
        _render_manifest_source(controller)

    if st.session_state.last_apply_result is not None:
        st.subheader("Last Apply")
        _render_apply_result(st.session_state.last_apply_result)

    snapshot = controller.snapshot()
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            volume_count=len(snapshot.volumes),
            claim_count=len(snapshot.claims),
            bound_count=len(snapshot.bindings),
            mount_count=len(snapshot.mounts),
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.subheader("Volumes")
    st.dataframe(_build_volume_rows(list(snapshot.volumes)), use_container_width=True, hide_index=True)
    st.subheader("Claims")
    st.dataframe(_build_claim_rows(list(snapshot.claims)), use_container_width=True, hide_index=True)
    if snapshot.pending_claims:
        st.warning(f"Waiting for capacity: {', '.join(snapshot.pending_claims)}")
    st.subheader("Bindings")
    st.dataframe(_build_binding_rows(list(snapshot.bindings)), use_container_width=True, hide_index=True)
    st.subheader("Mounts")
    st.dataframe(_build_mount_rows(list(snapshot.mounts)), use_container_width=True, hide_index=True)

    _render_actions(controller)

    if controller.history_store is not None:
        st.subheader("Recent Binding History")
        history_rows = _build_history_rows(controller.history_store.get_recent_events(limit=100))
        if history_rows:
            st.dataframe(history_rows, use_container_width=True, hide_index=True)
        else:
            st.info("No binding history yet.")


if __name__ == "__main__":
    main()
