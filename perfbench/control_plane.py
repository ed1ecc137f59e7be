"""Workload control plane: Argo CD Applications driven through kubectl.

The scenario runner only depends on the ``ControlPlane`` protocol, so any
system that can create, inspect, refresh and delete workloads can stand in
(tests use an in-memory fake).
"""
import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog

from perfbench.errors import ControlPlaneUnavailable, KubectlError
from perfbench.kubectl import Kubectl

logger = structlog.get_logger(__name__)

SUITE_LABEL = "test-suite"
REFRESH_ANNOTATION = "argocd.argoproj.io/refresh"
CONTROLLER_NAME = "argocd-application-controller"
REPO_SERVER_NAME = "argocd-repo-server"
CMD_PARAMS_CONFIGMAP = "argocd-cmd-params-cm"

# Controller flags worth recording next to a run
TUNING_FLAGS = (
    "operation-processors",
    "status-processors",
    "kubectl-parallelism-limit",
    "repo-server-timeout-seconds",
    "app-resync",
)

FAILED_PHASES = ("Failed", "Error")


@dataclass
class WorkloadSpec:
    name: str
    label: str
    namespace: str
    destination_namespace: str
    repo_url: str
    path: str
    target_revision: str = "HEAD"

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": "argoproj.io/v1alpha1",
            "kind": "Application",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": {SUITE_LABEL: self.label},
            },
            "spec": {
                "project": "default",
                "source": {
                    "repoURL": self.repo_url,
                    "targetRevision": self.target_revision,
                    "path": self.path,
                },
                "destination": {
                    "server": "https://kubernetes.default.svc",
                    "namespace": self.destination_namespace,
                },
                "syncPolicy": {"automated": {"prune": True, "selfHeal": True}},
            },
        }


@dataclass
class WorkloadStatus:
    name: str
    sync_status: str = "Unknown"
    health_status: str = "Unknown"
    operation_phase: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.sync_status == "Synced"

    @property
    def failed(self) -> bool:
        return not self.succeeded and self.operation_phase in FAILED_PHASES

    @property
    def terminal(self) -> bool:
        return self.succeeded or self.failed

    @classmethod
    def from_application(cls, app: dict[str, Any]) -> "WorkloadStatus":
        status = app.get("status") or {}
        operation = status.get("operationState") or {}
        return cls(
            name=(app.get("metadata") or {}).get("name", ""),
            sync_status=(status.get("sync") or {}).get("status", "Unknown"),
            health_status=(status.get("health") or {}).get("status", "Unknown"),
            operation_phase=operation.get("phase"),
        )


class ControlPlane(Protocol):
    def ping(self) -> None:
        """Raise ControlPlaneUnavailable if the control plane cannot be reached."""
        ...

    def ensure_namespace(self, name: str) -> None:
        ...

    def create(self, spec: WorkloadSpec) -> str:
        """Create or update a workload; creating an existing one is a no-op."""
        ...

    def get(self, workload_id: str) -> WorkloadStatus:
        ...

    def delete(self, workload_id: str) -> None:
        ...

    def force_refresh(self, workload_id: str) -> None:
        ...

    def list_statuses(self, label: str) -> list[WorkloadStatus]:
        ...

    def delete_suite(self, label: str) -> None:
        ...

    def observed_settings(self) -> dict[str, Any]:
        ...


class ArgoApplicationControlPlane:
    """ControlPlane backed by Argo CD Application resources."""

    def __init__(self, kubectl: Kubectl, namespace: str = "argocd") -> None:
        self._kubectl = kubectl
        self._namespace = namespace

    def ping(self) -> None:
        try:
            self._kubectl.run("get", "namespace", self._namespace)
        except KubectlError as e:
            raise ControlPlaneUnavailable(
                f"Argo CD namespace '{self._namespace}' not reachable: {e}"
            ) from e

    def ensure_namespace(self, name: str) -> None:
        manifest = self._kubectl.run(
            "create", "namespace", name, "--dry-run=client", "-o", "json"
        )
        self._kubectl.run("apply", "-f", "-", input=manifest)

    def create(self, spec: WorkloadSpec) -> str:
        self._kubectl.run("apply", "-f", "-", input=json.dumps(spec.to_manifest()))
        logger.debug("Applied application", name=spec.name, label=spec.label)
        return spec.name

    def get(self, workload_id: str) -> WorkloadStatus:
        app = self._kubectl.get_json("get", "application", workload_id, "-n", self._namespace)
        return WorkloadStatus.from_application(app)

    def delete(self, workload_id: str) -> None:
        self._kubectl.run(
            "delete", "application", workload_id,
            "-n", self._namespace, "--ignore-not-found=true",
        )

    def force_refresh(self, workload_id: str) -> None:
        patch = json.dumps({"metadata": {"annotations": {REFRESH_ANNOTATION: "hard"}}})
        self._kubectl.run(
            "patch", "application", workload_id,
            "-n", self._namespace, "--type", "merge", "-p", patch,
        )

    def list_statuses(self, label: str) -> list[WorkloadStatus]:
        apps = self._kubectl.get_json(
            "get", "applications", "-n", self._namespace, "-l", f"{SUITE_LABEL}={label}"
        )
        return [WorkloadStatus.from_application(item) for item in apps.get("items", [])]

    def delete_suite(self, label: str) -> None:
        self._kubectl.run(
            "delete", "applications", "-n", self._namespace,
            "-l", f"{SUITE_LABEL}={label}", "--ignore-not-found=true",
        )
        logger.info("Deleted test applications", label=label, namespace=self._namespace)

    def observed_settings(self) -> dict[str, Any]:
        """Best-effort snapshot of the tuning knobs applied to the installation."""
        settings: dict[str, Any] = {}
        try:
            sts = self._kubectl.get_json(
                "get", "statefulset", CONTROLLER_NAME, "-n", self._namespace
            )
            containers = sts["spec"]["template"]["spec"]["containers"]
            settings.update(parse_controller_args(containers[0].get("args") or []))
        except (KubectlError, KeyError, IndexError) as e:
            logger.warning("Could not read controller args", error=str(e))

        try:
            cm = self._kubectl.get_json(
                "get", "configmap", CMD_PARAMS_CONFIGMAP, "-n", self._namespace
            )
            for key, value in sorted((cm.get("data") or {}).items()):
                settings[f"cmd_params.{key}"] = value
        except KubectlError as e:
            logger.warning("Could not read command parameters", error=str(e))

        try:
            deploy = self._kubectl.get_json(
                "get", "deployment", REPO_SERVER_NAME, "-n", self._namespace
            )
            limit = empty_dir_size_limit(deploy, "tmp")
            if limit:
                settings["repo_server_tmp_size_limit"] = limit
        except KubectlError as e:
            logger.warning("Could not read repo-server volumes", error=str(e))
        return settings


def parse_controller_args(args: list[str]) -> dict[str, str]:
    """Extract tuning flags from a container args list.

    Handles both ``--flag=value`` and ``--flag value`` spellings.
    """
    found: dict[str, str] = {}
    for i, arg in enumerate(args):
        if not arg.startswith("--"):
            continue
        flag, sep, value = arg[2:].partition("=")
        if flag not in TUNING_FLAGS:
            continue
        if not sep:
            if i + 1 >= len(args) or args[i + 1].startswith("--"):
                continue
            value = args[i + 1]
        found[flag] = value
    return found


def empty_dir_size_limit(workload: dict[str, Any], volume_name: str) -> Optional[str]:
    volumes = (
        ((workload.get("spec") or {}).get("template") or {}).get("spec") or {}
    ).get("volumes") or []
    for volume in volumes:
        if volume.get("name") == volume_name:
            return (volume.get("emptyDir") or {}).get("sizeLimit")
    return None
