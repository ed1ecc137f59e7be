"""
emptyDir sizeLimit lifecycle test.

Writes more than the configured sizeLimit into a component's /tmp and records
what Kubernetes did about it. Two outcomes are correct and depend on whether
the write hits ENOSPC before the kubelet's next ephemeral-storage check:
the pod survives with a full but bounded volume, or it is evicted and its
controller replaces it with a fresh one. Neither may cause node DiskPressure.
"""
import threading
from dataclasses import dataclass
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, Field

from perfbench.control_plane import empty_dir_size_limit
from perfbench.errors import KubectlError
from perfbench.kubectl import Kubectl
from perfbench.models import CheckResult, DiskPressureOutcome

logger = structlog.get_logger(__name__)

TEST_FILE = "/tmp/perfbench-testfile"


@dataclass(frozen=True)
class Component:
    name: str
    kind: str
    volume: str


COMPONENTS = {
    "repo-server": Component("argocd-repo-server", "deployment", "tmp"),
    "application-controller": Component(
        "argocd-application-controller", "statefulset", "argocd-application-controller-tmp"
    ),
}


class DiskPressureResult(BaseModel):
    component: str
    size_limit: Optional[str] = None
    outcome: Optional[DiskPressureOutcome] = None
    original_pod: Optional[str] = None
    current_pod: Optional[str] = None
    write_blocked: bool = False
    node_disk_pressure: Optional[bool] = None
    checks: List[CheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)


class DiskPressureScenario:
    def __init__(
        self,
        kubectl: Kubectl,
        namespace: str = "argocd",
        write_mb: int = 5000,
        settle_seconds: float = 10.0,
        write_timeout_seconds: float = 900.0,
    ) -> None:
        self._kubectl = kubectl
        self._namespace = namespace
        self._write_mb = write_mb
        self._settle_seconds = settle_seconds
        self._write_timeout = write_timeout_seconds

    def _check(self, result: DiskPressureResult, name: str, passed: bool, detail: str = "") -> None:
        result.checks.append(CheckResult(name=name, passed=passed, detail=detail))
        log = logger.info if passed else logger.warning
        log("Disk pressure check", component=result.component, check=name, passed=passed, detail=detail)

    def _running_pod(self, component: Component) -> Optional[dict[str, Any]]:
        pods = self._kubectl.get_json(
            "get", "pods", "-n", self._namespace,
            "-l", f"app.kubernetes.io/name={component.name}",
            "--field-selector=status.phase=Running",
        )
        items = pods.get("items") or []
        return items[0] if items else None

    def _pod_state(self, name: str) -> tuple[str, Optional[str]]:
        try:
            pod = self._kubectl.get_json("get", "pod", name, "-n", self._namespace)
        except KubectlError:
            return "NotFound", None
        return (pod.get("status") or {}).get("phase", "Unknown"), pod["metadata"].get("uid")

    def _node_disk_pressure(self) -> List[str]:
        nodes = self._kubectl.get_json("get", "nodes")
        pressured = []
        for node in nodes.get("items", []):
            for cond in (node.get("status") or {}).get("conditions") or []:
                if cond.get("type") == "DiskPressure" and cond.get("status") == "True":
                    pressured.append(node["metadata"]["name"])
        return pressured

    def run(self, component_key: str, cancel: Optional[threading.Event] = None) -> DiskPressureResult:
        component = COMPONENTS[component_key]
        cancel = cancel or threading.Event()
        result = DiskPressureResult(component=component_key)

        workload = self._kubectl.get_json("get", component.kind, component.name, "-n", self._namespace)
        result.size_limit = empty_dir_size_limit(workload, component.volume)
        if not result.size_limit:
            self._check(result, "emptyDir sizeLimit configured", False,
                        f"volume '{component.volume}' has no sizeLimit")
            return result
        self._check(result, "emptyDir sizeLimit configured", True, result.size_limit)

        pod = self._running_pod(component)
        if pod is None:
            self._check(result, "running pod found", False, f"no running pod for {component.name}")
            return result
        pod_name = pod["metadata"]["name"]
        pod_uid = pod["metadata"].get("uid")
        statuses = (pod.get("status") or {}).get("containerStatuses") or []
        restarts = statuses[0].get("restartCount", 0) if statuses else 0
        result.original_pod = pod_name
        self._check(result, "running pod found", True, f"{pod_name} ({restarts} restarts)")

        logger.info("Writing test file", pod=pod_name, megabytes=self._write_mb, size_limit=result.size_limit)
        try:
            self._kubectl.run(
                "exec", "-n", self._namespace, pod_name, "--",
                "dd", "if=/dev/zero", f"of={TEST_FILE}", "bs=1M", f"count={self._write_mb}",
                timeout=self._write_timeout,
            )
            logger.warning("Write was not blocked by sizeLimit", pod=pod_name)
        except KubectlError as e:
            if e.timed_out:
                # still writing, so nothing stopped it yet
                self._check(result, "test write finished", False, str(e))
            else:
                result.write_blocked = True
                logger.info("Write failed as expected", pod=pod_name, error=str(e))

        # give the kubelet a chance to act on the breach
        cancel.wait(timeout=self._settle_seconds)

        phase, uid = self._pod_state(pod_name)
        if phase == "Running" and uid == pod_uid:
            result.outcome = DiskPressureOutcome.POD_SURVIVED
            result.current_pod = pod_name
            self._check(result, "original pod still running", True, pod_name)
            try:
                self._kubectl.run("exec", "-n", self._namespace, pod_name, "--", "rm", "-f", TEST_FILE)
                self._check(result, "test file removed", True)
            except KubectlError as e:
                self._check(result, "test file removed", False, str(e))
        else:
            replacement = self._running_pod(component)
            if replacement is not None and replacement["metadata"].get("uid") != pod_uid:
                result.outcome = DiskPressureOutcome.POD_EVICTED_REPLACED
                result.current_pod = replacement["metadata"]["name"]
                self._check(result, "evicted pod replaced", True,
                            f"{pod_name} ({phase}) -> {result.current_pod}")
            else:
                result.outcome = DiskPressureOutcome.NO_REPLACEMENT
                self._check(result, "evicted pod replaced", False,
                            f"{pod_name} is {phase} and no replacement is running")

        pressured = self._node_disk_pressure()
        result.node_disk_pressure = bool(pressured)
        self._check(result, "no node DiskPressure", not pressured, ", ".join(pressured))

        logger.info("Disk pressure test finished", component=component_key, outcome=result.outcome.value)
        return result
