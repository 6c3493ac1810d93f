from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import urlparse

import streamlit as st

from conplicity.config import KNOWN_ENGINES, AppConfig, ConfigurationError, load_config, validate_config
from conplicity.docker_runtime import DockerRuntimeError, ensure_image, list_volumes, load_docker_client
from conplicity.metadata import OperationHistoryStore
from conplicity.metrics import render_metrics
from conplicity.models import Metric, RunReport, Volume
from conplicity.orchestrator import VolumeBackupOrchestrator, resolve_target, skip_reason
from conplicity.worker import WorkerLauncher

_BATCH_MODE_SEQUENTIAL_LABEL = "Sequential"
_BATCH_MODE_PARALLEL_LABEL = "Parallel"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_STAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "image stage failed",
        "Check the engine image reference and that the registry is reachable from the Docker host.",
    ),
    (
        "create stage failed",
        "Verify the daemon accepts the bind specifications and no worker name collides.",
    ),
    (
        "start stage failed",
        "Inspect the daemon logs; the worker image entrypoint may be missing.",
    ),
    (
        "inspect stage failed",
        "The worker disappeared mid-run; check for external cleanup jobs removing containers.",
    ),
    (
        "logs stage failed",
        "The worker ran but its output could not be read; check the daemon logging driver.",
    ),
    (
        "did not exit within",
        "Increase CONPLICITY_WORKER_TIMEOUT_SECONDS or investigate the backup tool for hangs.",
    ),
    (
        "exited with state",
        "Review the backup tool output in the run logs; credentials and target URL are common causes.",
    ),
    (
        "failed to parse",
        "The status output did not contain the expected markers; confirm a backup chain exists.",
    ),
    (
        "unknown engine",
        "Fix the io.conplicity.engine label to name duplicity, restic or rclone.",
    ),
)


@dataclass(frozen=True)
class BatchExecutionSettings:
    mode: str
    requested_max_workers: int
    effective_max_workers: int


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "client": None,
        "volumes": [],
        "last_report": None,
        "selected_volume_labels": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_volume_rows(
    volumes: list[Volume],
    config: AppConfig,
    last_success_map: dict[str, str] | None = None,
) -> list[dict[str, str]]:
    last_success_map = last_success_map or {}
    rows: list[dict[str, str]] = []
    for volume in volumes:
        reason = skip_reason(volume)
        state = f"skipped ({reason})" if reason else "eligible"
        engine = ""
        full_if_older_than = ""
        remove_older_than = ""
        if reason is None:
            try:
                target = resolve_target(volume, config)
                engine = target.engine
                full_if_older_than = target.full_if_older_than
                remove_older_than = target.remove_older_than
            except ConfigurationError as error:
                state = f"misconfigured ({error})"

        rows.append(
            {
                "volume": volume.name,
                "driver": volume.driver or "unknown",
                "mountpoint": volume.mountpoint or "unknown",
                "state": state,
                "engine": engine,
                "full_if_older_than": full_if_older_than,
                "remove_older_than": remove_older_than,
                "last_successful_backup_at": last_success_map.get(volume.name, "never"),
            }
        )
    return rows


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for stage, hint in _STAGE_HINTS:
        if stage in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect the run logs for this volume."


def _build_result_rows(report: RunReport) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for outcome in report.outcomes:
        if outcome.skipped:
            rows.append(
                {
                    "volume": outcome.volume_name,
                    "engine": "",
                    "operation": "",
                    "status": "skipped",
                    "finished_at": "",
                    "message": outcome.skipped_reason or "",
                    "actionable_message": "No follow-up action required.",
                }
            )
            continue

        for operation in outcome.operations:
            actionable_message = "Operation completed successfully."
            if not operation.succeeded:
                actionable_message = _actionable_next_step(operation.message)
            rows.append(
                {
                    "volume": outcome.volume_name,
                    "engine": outcome.engine or "",
                    "operation": operation.operation,
                    "status": operation.status,
                    "finished_at": operation.finished_at,
                    "message": operation.message,
                    "actionable_message": actionable_message,
                }
            )
    return rows


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        status = str(row.get("status", ""))
        message = str(row.get("message", "") or "")
        actionable_message = "Operation completed successfully."
        if status != "success":
            actionable_message = _actionable_next_step(message)

        rendered_rows.append(
            {
                "volume": str(row.get("volume_name", "")),
                "engine": str(row.get("engine", "")),
                "operation": str(row.get("operation", "")),
                "status": status,
                "created_at": str(row.get("created_at", "")),
                "message": message,
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _build_batch_execution_settings(*, mode_label: str, requested_max_workers: int) -> BatchExecutionSettings:
    normalized_workers = max(1, requested_max_workers)
    if mode_label == _BATCH_MODE_PARALLEL_LABEL:
        return BatchExecutionSettings(
            mode="parallel",
            requested_max_workers=normalized_workers,
            effective_max_workers=normalized_workers,
        )

    return BatchExecutionSettings(
        mode="sequential",
        requested_max_workers=normalized_workers,
        effective_max_workers=1,
    )


def _build_workflow_rows(
    *,
    connected: bool,
    discovered_count: int,
    selected_count: int,
    has_report: bool,
) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    discover_state = "done" if discovered_count > 0 else ("active" if connected else "blocked")
    select_state = "done" if selected_count > 0 else ("active" if discovered_count > 0 else "blocked")
    backup_state = "done" if has_report else ("active" if selected_count > 0 else "blocked")
    review_state = "done" if has_report else ("active" if connected else "blocked")

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Connect to the Docker daemon from the sidebar.",
        },
        {
            "step": "2. Discover",
            "state": _WORKFLOW_STATE_LABELS[discover_state],
            "description": "Refresh the volume inventory and label overrides.",
        },
        {
            "step": "3. Select",
            "state": _WORKFLOW_STATE_LABELS[select_state],
            "description": "Choose one or more volumes to back up.",
        },
        {
            "step": "4. Backup",
            "state": _WORKFLOW_STATE_LABELS[backup_state],
            "description": "Run backup, verification, retention and status for the selection.",
        },
        {
            "step": "5. Review",
            "state": _WORKFLOW_STATE_LABELS[review_state],
            "description": "Inspect operation results, metrics and recent history.",
        },
    ]


def _validate_connection_inputs(*, docker_host_input: str) -> str | None:
    docker_host = docker_host_input.strip()
    if not docker_host:
        return "Docker host is required (for example unix:///var/run/docker.sock)."

    scheme = urlparse(docker_host).scheme
    if scheme not in {"unix", "tcp", "ssh", "npipe", "http", "https"}:
        return f"Docker host must start with unix://, tcp:// or ssh:// (got '{docker_host}')."
    return None


def _label_for_volume(volume: Volume) -> str:
    return f"{volume.name} | driver={volume.driver or 'unknown'}"


def _build_metric_rows(metrics: list[Metric]) -> list[dict[str, str]]:
    return [{"metric": line} for line in render_metrics(metrics)]


def main() -> None:
    st.set_page_config(page_title="Conplicity", layout="wide")
    _initialize_state()

    try:
        base_config = load_config()
    except ConfigurationError as error:
        st.error(str(error))
        return

    st.title("Conplicity")
    st.caption("Back up Docker volumes with duplicity, restic or rclone workers and track the results.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and st.session_state.client is not None),
            discovered_count=len(st.session_state.volumes),
            selected_count=len(st.session_state.selected_volume_labels),
            has_report=st.session_state.last_report is not None,
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Docker Connection")
    docker_host_input = st.sidebar.text_input("Docker host", value=base_config.docker_host)

    st.sidebar.header("Backup Target")
    target_url_input = st.sidebar.text_input("Target URL", value=base_config.target_url)
    engine_input = st.sidebar.selectbox(
        "Default engine",
        options=list(KNOWN_ENGINES),
        index=list(KNOWN_ENGINES).index(base_config.engine) if base_config.engine in KNOWN_ENGINES else 0,
        help="Volumes can override this with the io.conplicity.engine label.",
    )
    st.sidebar.caption("Credentials are read from the environment and never shown here.")
    st.sidebar.caption(f"History DB path: {base_config.metadata_db_path}")

    st.sidebar.header("Batch Execution")
    mode_label = st.sidebar.selectbox(
        "Execution mode",
        options=[_BATCH_MODE_SEQUENTIAL_LABEL, _BATCH_MODE_PARALLEL_LABEL],
        index=0,
    )
    requested_max_workers = int(
        st.sidebar.number_input(
            "Max parallel volumes",
            min_value=1,
            max_value=16,
            value=max(1, base_config.max_workers),
            step=1,
            disabled=mode_label == _BATCH_MODE_SEQUENTIAL_LABEL,
        )
    )
    batch_settings = _build_batch_execution_settings(
        mode_label=mode_label,
        requested_max_workers=requested_max_workers,
    )

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(docker_host_input=docker_host_input)
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                st.session_state.client = load_docker_client(docker_host_input.strip())
                st.session_state.connected = True
                st.session_state.volumes = []
                st.session_state.last_report = None
                st.session_state.selected_volume_labels = []
                st.success("Connected to Docker daemon.")
            except DockerRuntimeError as error:
                st.session_state.connected = False
                st.session_state.client = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.client = None
        st.session_state.volumes = []
        st.session_state.last_report = None
        st.session_state.selected_volume_labels = []

    if not st.session_state.connected or st.session_state.client is None:
        st.info("Connect to a Docker daemon from the sidebar to start discovery and backup operations.")
        return

    config = replace(
        base_config,
        docker_host=docker_host_input.strip(),
        target_url=target_url_input.strip(),
        engine=engine_input,
        max_workers=batch_settings.effective_max_workers,
    )
    try:
        validate_config(config)
    except ConfigurationError as error:
        st.error(str(error))
        return

    history = OperationHistoryStore(config.metadata_db_path)
    history.initialize()
    client = st.session_state.client

    st.subheader("Volume Discovery")
    if st.button("Refresh volume inventory"):
        with st.spinner("Listing and inspecting volumes..."):
            try:
                st.session_state.volumes = list_volumes(client)
                st.session_state.selected_volume_labels = []
                if not st.session_state.volumes:
                    st.warning("Discovery completed, but the daemon reported no volumes.")
            except DockerRuntimeError as error:
                st.error(str(error))

    volumes: list[Volume] = st.session_state.volumes
    if volumes:
        st.dataframe(
            _build_volume_rows(volumes, config, history.get_last_success_map()),
            use_container_width=True,
            hide_index=True,
        )

        st.subheader("Backup Selection")
        labels = [_label_for_volume(volume) for volume in volumes]
        label_to_volume = dict(zip(labels, volumes, strict=False))
        st.session_state.selected_volume_labels = [
            label for label in st.session_state.selected_volume_labels if label in label_to_volume
        ]
        selected_labels = st.multiselect(
            "Choose one or more volumes to back up",
            options=labels,
            key="selected_volume_labels",
        )
        st.caption(f"Selected volumes: {len(selected_labels)}")

        if st.button("Back up selected volumes"):
            if not selected_labels:
                st.warning("Select at least one volume.")
            else:
                selected_volumes = [label_to_volume[label] for label in selected_labels]
                try:
                    ensure_image(client, config.image_for(config.engine))
                except DockerRuntimeError as error:
                    st.error(str(error))
                    return

                launcher = WorkerLauncher(
                    client,
                    poll_interval_seconds=config.poll_interval_seconds,
                    timeout_seconds=config.worker_timeout_seconds or None,
                )
                orchestrator = VolumeBackupOrchestrator(config=config, launcher=launcher, history=history)
                with st.spinner(f"Running backups for {len(selected_volumes)} volume(s)..."):
                    st.session_state.last_report = orchestrator.run(selected_volumes)

                report: RunReport = st.session_state.last_report
                failed = report.failed_volumes
                if failed:
                    st.error(
                        f"Backup run finished with failures: {len(failed)} of {len(report.outcomes)} "
                        "volume(s) failed. Review actionable details below."
                    )
                else:
                    st.success(f"Backup run finished successfully for {len(report.outcomes)} volume(s).")
    else:
        st.info("Click 'Refresh volume inventory' to load Docker volumes.")

    report = st.session_state.last_report
    if report is not None:
        st.subheader("Latest Backup Run")
        latest_rows = _build_result_rows(report)
        st.dataframe(latest_rows, use_container_width=True, hide_index=True)
        failed_rows = [row for row in latest_rows if row["status"] not in {"success", "skipped"}]
        if failed_rows:
            st.markdown("**Actionable Failures**")
            for row in failed_rows:
                st.error(f"{row['volume']} ({row['operation']}): {row['actionable_message']}")

        st.subheader("Metrics")
        metric_rows = _build_metric_rows(report.metrics)
        if metric_rows:
            st.dataframe(metric_rows, use_container_width=True, hide_index=True)
        else:
            st.info("The latest run produced no metrics.")

    st.subheader("Recent Operation History")
    history_rows = _build_history_rows(history.get_recent_results(limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No operation history yet. Run your first backup to populate this table.")


if __name__ == "__main__":
    main()
