"""
Read-only environment checks before a benchmark run: tooling on PATH, cluster
reachable, Argo CD components present, controller metrics endpoint serving.
"""
import shutil
import urllib.error
import urllib.request
from typing import List

import structlog

from perfbench.config import Config
from perfbench.control_plane import CONTROLLER_NAME, REPO_SERVER_NAME
from perfbench.errors import KubectlError
from perfbench.kubectl import Kubectl
from perfbench.models import CheckResult

logger = structlog.get_logger(__name__)


def check_binary(name: str) -> CheckResult:
    path = shutil.which(name)
    if path:
        return CheckResult(name=f"{name} installed", passed=True, detail=path)
    return CheckResult(name=f"{name} installed", passed=False, detail=f"{name} not found on PATH")


def check_kubectl(kubectl: Kubectl, name: str, *args: str) -> CheckResult:
    try:
        kubectl.run(*args)
        return CheckResult(name=name, passed=True)
    except KubectlError as e:
        return CheckResult(name=name, passed=False, detail=str(e))


def check_endpoint(url: str, expected_status: int = 200, timeout: float = 10.0) -> CheckResult:
    name = f"endpoint {url}"
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            if resp.status == expected_status:
                return CheckResult(name=name, passed=True, detail=str(resp.status))
            return CheckResult(name=name, passed=False, detail=f"{resp.status} (expected {expected_status})")
    except (urllib.error.URLError, OSError) as e:
        return CheckResult(name=name, passed=False, detail=f"unreachable: {e}")


def run_preflight(kubectl: Kubectl, config: Config) -> List[CheckResult]:
    ns = config.argocd_namespace
    results = [check_binary("kubectl")]
    if results[0].passed:
        results.append(check_kubectl(kubectl, "cluster reachable", "cluster-info"))
        results.append(check_kubectl(kubectl, f"namespace {ns}", "get", "namespace", ns))
        results.append(check_kubectl(
            kubectl, f"deployment {REPO_SERVER_NAME}", "get", "deployment", REPO_SERVER_NAME, "-n", ns
        ))
        results.append(check_kubectl(
            kubectl, f"statefulset {CONTROLLER_NAME}", "get", "statefulset", CONTROLLER_NAME, "-n", ns
        ))
        results.append(check_endpoint(config.metrics_url, timeout=config.metrics_timeout_seconds))

    for r in results:
        if r.passed:
            logger.info("Preflight check passed", check=r.name)
        else:
            logger.warning("Preflight check failed", check=r.name, detail=r.detail)
    return results
