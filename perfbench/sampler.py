import math
import re
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import structlog
from prometheus_client.parser import text_string_to_metric_families

from perfbench.config import Config
from perfbench.errors import KubectlError, ProbeUnavailable
from perfbench.kubectl import Kubectl
from perfbench.models import Measurement

logger = structlog.get_logger(__name__)

COMPONENT_SELECTORS = {
    "repo_server": "app.kubernetes.io/name=argocd-repo-server",
    "controller": "app.kubernetes.io/name=argocd-application-controller",
}

_CPU_RE = re.compile(r"^(\d+(?:\.\d+)?)(n|u|m)?$")
_MEM_RE = re.compile(r"^(\d+(?:\.\d+)?)(Ki|Mi|Gi|Ti|K|M|G)?$")

# Scale factors to millicores / MiB
_CPU_SCALE = {None: 1000.0, "m": 1.0, "u": 1e-3, "n": 1e-6}
_MEM_SCALE = {
    None: 1.0 / (1024 * 1024),
    "Ki": 1.0 / 1024,
    "Mi": 1.0,
    "Gi": 1024.0,
    "Ti": 1024.0 * 1024,
    "K": 1000.0 / (1024 * 1024),
    "M": 1e6 / (1024 * 1024),
    "G": 1e9 / (1024 * 1024),
}


def parse_cpu_millicores(text: str) -> float:
    match = _CPU_RE.match(text.strip())
    if not match:
        raise ValueError(f"unrecognised CPU quantity: {text!r}")
    return float(match.group(1)) * _CPU_SCALE[match.group(2)]


def parse_memory_mib(text: str) -> float:
    match = _MEM_RE.match(text.strip())
    if not match:
        raise ValueError(f"unrecognised memory quantity: {text!r}")
    return float(match.group(1)) * _MEM_SCALE[match.group(2)]


def parse_df_percent(output: str) -> float:
    """Return the Use% column of the last line of POSIX ``df -P`` output."""
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError("df output has no data line")
    fields = lines[-1].split()
    if len(fields) < 5 or not fields[4].endswith("%"):
        raise ValueError(f"unexpected df line: {lines[-1]!r}")
    return float(fields[4].rstrip("%"))


class Probe(ABC):
    """A single named metric query against an external system."""

    def __init__(self, name: str, unit: str) -> None:
        self.name = name
        self.unit = unit

    @abstractmethod
    def read(self) -> float:
        """Return the current value or raise ProbeUnavailable."""
        ...


class _PodProbe(Probe):
    def __init__(self, name: str, unit: str, kubectl: Kubectl, namespace: str, selector: str) -> None:
        super().__init__(name, unit)
        self._kubectl = kubectl
        self._namespace = namespace
        self._selector = selector

    def _first_pod(self) -> dict[str, Any]:
        try:
            pods = self._kubectl.get_json("get", "pods", "-n", self._namespace, "-l", self._selector)
        except KubectlError as e:
            raise ProbeUnavailable(str(e)) from e
        items = pods.get("items") or []
        if not items:
            raise ProbeUnavailable(f"no pods match {self._selector}")
        return items[0]


class PodResourceProbe(_PodProbe):
    """CPU (millicores) or memory (MiB) of the first matching pod, via ``kubectl top``."""

    def __init__(self, name: str, kubectl: Kubectl, namespace: str, selector: str, resource: str) -> None:
        if resource not in ("cpu", "memory"):
            raise ValueError(f"resource must be cpu or memory, got {resource!r}")
        super().__init__(name, "millicores" if resource == "cpu" else "MiB", kubectl, namespace, selector)
        self._resource = resource

    def read(self) -> float:
        try:
            out = self._kubectl.run(
                "top", "pods", "-n", self._namespace, "-l", self._selector, "--no-headers"
            )
        except KubectlError as e:
            raise ProbeUnavailable(f"metrics-server not available: {e}") from e
        lines = [line for line in out.splitlines() if line.strip()]
        if not lines:
            raise ProbeUnavailable(f"no usage reported for {self._selector}")
        fields = lines[0].split()
        if len(fields) < 3:
            raise ProbeUnavailable(f"unexpected kubectl top line: {lines[0]!r}")
        try:
            if self._resource == "cpu":
                return parse_cpu_millicores(fields[1])
            return parse_memory_mib(fields[2])
        except ValueError as e:
            raise ProbeUnavailable(str(e)) from e


class DiskUsageProbe(_PodProbe):
    def __init__(self, name: str, kubectl: Kubectl, namespace: str, selector: str, path: str = "/tmp") -> None:
        super().__init__(name, "percent", kubectl, namespace, selector)
        self._path = path

    def read(self) -> float:
        pod = self._first_pod()["metadata"]["name"]
        try:
            out = self._kubectl.run("exec", "-n", self._namespace, pod, "--", "df", "-P", self._path)
            return parse_df_percent(out)
        except (KubectlError, ValueError) as e:
            raise ProbeUnavailable(str(e)) from e


class RestartCountProbe(_PodProbe):
    def __init__(self, name: str, kubectl: Kubectl, namespace: str, selector: str) -> None:
        super().__init__(name, "count", kubectl, namespace, selector)

    def read(self) -> float:
        pod = self._first_pod()
        statuses = (pod.get("status") or {}).get("containerStatuses") or []
        if not statuses:
            raise ProbeUnavailable(f"pod {pod['metadata']['name']} has no container statuses")
        return float(statuses[0].get("restartCount", 0))


class PrometheusProbe(Probe):
    """Sums the samples of one metric scraped from a Prometheus text endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        metric: str,
        labels: Optional[dict[str, str]] = None,
        unit: str = "",
        timeout: float = 10.0,
    ) -> None:
        super().__init__(name, unit)
        self._url = url
        self._metric = metric
        self._labels = labels or {}
        self._timeout = timeout

    def _fetch(self) -> str:
        try:
            with urllib.request.urlopen(self._url, timeout=self._timeout) as resp:
                return resp.read().decode("utf-8")
        except (urllib.error.URLError, OSError) as e:
            raise ProbeUnavailable(f"{self._url} unreachable: {e}") from e

    def read(self) -> float:
        content = self._fetch()
        total = 0.0
        matched = False
        try:
            for family in text_string_to_metric_families(content):
                for sample in family.samples:
                    if sample.name != self._metric:
                        continue
                    if any(sample.labels.get(k) != v for k, v in self._labels.items()):
                        continue
                    total += sample.value
                    matched = True
        except ValueError as e:
            raise ProbeUnavailable(f"unparseable metrics payload: {e}") from e
        if not matched:
            raise ProbeUnavailable(f"metric '{self._metric}' not found at {self._url}")
        if not math.isfinite(total):
            raise ProbeUnavailable(f"metric '{self._metric}' at {self._url} is {total}")
        return total


class MetricSampler:
    """Takes one snapshot across a set of probes, isolating failures per probe."""

    def __init__(self, probes: List[Probe]) -> None:
        self._probes = probes

    def sample(self) -> List[Measurement]:
        measurements = []
        for probe in self._probes:
            try:
                value = probe.read()
                if not math.isfinite(value):
                    raise ProbeUnavailable(f"non-finite value {value}")
                measurements.append(Measurement(name=probe.name, value=value, unit=probe.unit))
            except ProbeUnavailable as e:
                logger.warning("Probe unavailable", kind=ProbeUnavailable.kind, probe=probe.name, error=str(e))
                measurements.append(Measurement(name=probe.name, unit=probe.unit, error=str(e)))
            except Exception as e:
                logger.exception("Unexpected error reading probe", probe=probe.name, error=str(e))
                measurements.append(Measurement(name=probe.name, unit=probe.unit, error=str(e)))
        return measurements


def default_probes(kubectl: Kubectl, config: Config) -> List[Probe]:
    ns = config.argocd_namespace
    probes: List[Probe] = []
    for component, selector in COMPONENT_SELECTORS.items():
        probes.append(PodResourceProbe(f"{component}_cpu", kubectl, ns, selector, "cpu"))
        probes.append(PodResourceProbe(f"{component}_memory", kubectl, ns, selector, "memory"))
    probes.append(DiskUsageProbe("repo_server_tmp_usage", kubectl, ns, COMPONENT_SELECTORS["repo_server"]))
    for component, selector in COMPONENT_SELECTORS.items():
        probes.append(RestartCountProbe(f"{component}_restarts", kubectl, ns, selector))
    probes.append(
        PrometheusProbe(
            "queue_depth",
            config.metrics_url,
            config.queue_metric,
            unit="items",
            timeout=config.metrics_timeout_seconds,
        )
    )
    return probes
