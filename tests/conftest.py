import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import pytest
import structlog

from perfbench.control_plane import WorkloadSpec, WorkloadStatus
from perfbench.errors import ControlPlaneUnavailable, KubectlError, ProbeUnavailable
from perfbench.models import Measurement, RunRecord
from perfbench.runner import ScenarioSettings
from perfbench.sampler import Probe


class FakeControlPlane:
    """In-memory ControlPlane.

    Each workload reports Synced once ``sync_after_polls`` status polls have
    happened since it was first created, and stays Synced until deleted, so
    re-applying it changes nothing (like ``kubectl apply``). Names in
    ``fail_names`` fail and names in ``never_sync`` stay OutOfSync forever.
    With ``sticky_deletes`` a suite delete is accepted but nothing goes away.
    """

    def __init__(
        self,
        reachable: bool = True,
        sync_after_polls: int = 0,
        fail_names: Iterable[str] = (),
        never_sync: Iterable[str] = (),
        create_errors: Iterable[str] = (),
        sticky_deletes: bool = False,
    ) -> None:
        self.reachable = reachable
        self.sync_after_polls = sync_after_polls
        self.fail_names = set(fail_names)
        self.never_sync = set(never_sync)
        self.create_errors = set(create_errors)
        self.sticky_deletes = sticky_deletes
        self.apps: dict[str, WorkloadSpec] = {}
        self.created_at: dict[str, int] = {}
        self.synced: set[str] = set()
        self.namespaces: set[str] = set()
        self.create_calls = 0
        self.refreshed: list[str] = []
        self.suite_deletes: list[str] = []
        # (workloads listed, workloads synced) per status poll
        self.poll_log: list[tuple[int, int]] = []
        self.polls = 0
        self._lock = threading.Lock()

    def seed(self, specs: Iterable[WorkloadSpec], synced: bool = True) -> None:
        """Pretend ``specs`` were left behind by an earlier run."""
        for spec in specs:
            self.apps[spec.name] = spec
            self.created_at[spec.name] = self.polls
            if synced:
                self.synced.add(spec.name)

    def ping(self) -> None:
        if not self.reachable:
            raise ControlPlaneUnavailable("connection refused")

    def ensure_namespace(self, name: str) -> None:
        self.namespaces.add(name)

    def create(self, spec: WorkloadSpec) -> str:
        with self._lock:
            self.create_calls += 1
            if spec.name in self.create_errors:
                raise KubectlError(["apply", "-f", "-"], "admission webhook denied the request")
            if spec.name not in self.apps:
                self.created_at[spec.name] = self.polls
            self.apps[spec.name] = spec
        return spec.name

    def _status(self, name: str) -> WorkloadStatus:
        if name in self.synced:
            return WorkloadStatus(name, "Synced", "Healthy", "Succeeded")
        if name in self.never_sync:
            return WorkloadStatus(name, "OutOfSync", "Progressing", "Running")
        if name in self.fail_names:
            return WorkloadStatus(name, "OutOfSync", "Degraded", "Failed")
        if self.polls - self.created_at.get(name, 0) > self.sync_after_polls:
            self.synced.add(name)
            return WorkloadStatus(name, "Synced", "Healthy", "Succeeded")
        return WorkloadStatus(name, "OutOfSync", "Progressing", "Running")

    def get(self, workload_id: str) -> WorkloadStatus:
        return self._status(workload_id)

    def _forget(self, name: str) -> None:
        self.apps.pop(name, None)
        self.created_at.pop(name, None)
        self.synced.discard(name)

    def delete(self, workload_id: str) -> None:
        self._forget(workload_id)

    def force_refresh(self, workload_id: str) -> None:
        with self._lock:
            self.refreshed.append(workload_id)

    def list_statuses(self, label: str) -> list[WorkloadStatus]:
        self.polls += 1
        statuses = [self._status(name) for name, spec in sorted(self.apps.items()) if spec.label == label]
        self.poll_log.append((len(statuses), sum(1 for st in statuses if st.succeeded)))
        return statuses

    def delete_suite(self, label: str) -> None:
        self.suite_deletes.append(label)
        if self.sticky_deletes:
            return
        for name in [n for n, s in self.apps.items() if s.label == label]:
            self._forget(name)

    def observed_settings(self) -> dict[str, Any]:
        return {"operation-processors": "10"}


class StaticProbe(Probe):
    def __init__(self, name: str, value: Optional[float] = None, unit: str = "", error: Optional[str] = None) -> None:
        super().__init__(name, unit)
        self.value = value
        self.error = error
        self.reads = 0

    def read(self) -> float:
        self.reads += 1
        if self.error:
            raise ProbeUnavailable(self.error)
        return self.value


def make_record(label: str, metrics: dict[str, Optional[float]], **kwargs: Any) -> RunRecord:
    values: dict[str, Any] = dict(
        label=label,
        timestamp=datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc),
        scenario_config={"count": 30},
        target=30,
        completed=30,
        measurements=[
            Measurement(name=name, value=value, unit="s", error=None if value is not None else "probe failed")
            for name, value in metrics.items()
        ],
    )
    values.update(kwargs)
    return RunRecord(**values)


@pytest.fixture
def fake_control_plane():
    return FakeControlPlane()


@pytest.fixture
def settings():
    return ScenarioSettings(
        label="baseline",
        count=5,
        timeout_seconds=5,
        poll_interval_seconds=0.01,
        create_concurrency=3,
    )


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # main.configure_logging binds the stream that was current at call time
    structlog.reset_defaults()
