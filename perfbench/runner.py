import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

import structlog

from perfbench.config import Config
from perfbench.control_plane import ControlPlane, WorkloadSpec
from perfbench.errors import TIMEOUT_PARTIAL_COMPLETION, ControlPlaneUnavailable, PerfBenchError
from perfbench.models import Measurement, RunRecord, validate_label
from perfbench.sampler import MetricSampler

logger = structlog.get_logger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    LOADING = "loading"
    WAITING = "waiting"
    SAMPLING = "sampling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ScenarioSettings:
    label: str
    count: int
    timeout_seconds: float
    poll_interval_seconds: float = 5.0
    refresh_burst: bool = True
    create_concurrency: int = 8
    argocd_namespace: str = "argocd"
    destination_namespace: str = "test-apps"
    repo_url: str = "https://github.com/argoproj/argocd-example-apps"
    app_path: str = "guestbook"
    target_revision: str = "HEAD"

    @classmethod
    def from_config(cls, config: Config, label: str, **overrides: Any) -> "ScenarioSettings":
        values: dict[str, Any] = dict(
            label=label,
            count=config.num_apps,
            timeout_seconds=config.sync_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            refresh_burst=config.refresh_burst,
            create_concurrency=config.create_concurrency,
            argocd_namespace=config.argocd_namespace,
            destination_namespace=config.test_namespace,
            repo_url=config.app_repo_url,
            app_path=config.app_path,
            target_revision=config.app_target_revision,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def workload(self, index: int) -> WorkloadSpec:
        return WorkloadSpec(
            name=f"{self.label}-app-{index}",
            label=self.label,
            namespace=self.argocd_namespace,
            destination_namespace=self.destination_namespace,
            repo_url=self.repo_url,
            path=self.app_path,
            target_revision=self.target_revision,
        )


class ScenarioRunner:
    """Runs one benchmark scenario end-to-end and produces a RunRecord.

    Phases run sequentially: provisioning (after removing any workloads a
    previous run left under the same label), an optional refresh burst, waiting
    for every workload to reach a terminal sync state, then a single metric
    sample. Waiting stops early on timeout or when ``cancel`` is set; the
    record then reports the true number of completed workloads.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        sampler: MetricSampler,
        settings: ScenarioSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        validate_label(settings.label)
        if settings.count < 1:
            raise ValueError("count must be at least 1")
        self._cp = control_plane
        self._sampler = sampler
        self._settings = settings
        self._clock = clock
        self.phase = Phase.IDLE
        self.history: List[Phase] = [Phase.IDLE]

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        self.history.append(phase)
        logger.info("Scenario phase", phase=phase.value, label=self._settings.label)

    def _submit_all(self, action: Callable[[str], Any], items: List[Any], what: str) -> List[Any]:
        """Apply ``action`` to every item in parallel and wait for all of them."""
        done: List[Any] = []
        workers = max(1, min(self._settings.create_concurrency, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"perfbench-{what}") as pool:
            futures = [(item, pool.submit(action, item)) for item in items]
            for item, future in futures:
                try:
                    future.result()
                    done.append(item)
                except Exception as e:
                    logger.warning(f"Failed to {what} workload", item=str(item), error=str(e))
        return done

    def _clear_previous(self, cancel: threading.Event) -> None:
        """Delete workloads left under this label and wait until they are gone.

        Re-applying an existing Application does not reset its sync status, so
        a rerun would otherwise measure workloads that are already Synced.
        """
        s = self._settings
        try:
            remaining = len(self._cp.list_statuses(s.label))
        except PerfBenchError as e:
            raise ControlPlaneUnavailable(f"could not list existing workloads: {e}") from e
        if not remaining:
            return

        logger.info("Deleting workloads from a previous run", label=s.label, count=remaining)
        try:
            self._cp.delete_suite(s.label)
        except PerfBenchError as e:
            logger.warning("Suite delete failed, waiting for removal anyway", label=s.label, error=str(e))

        deadline = self._clock() + s.timeout_seconds
        while remaining:
            if self._clock() >= deadline:
                raise ControlPlaneUnavailable(
                    f"{remaining} workloads labelled '{s.label}' still present after {s.timeout_seconds}s"
                )
            if cancel.wait(timeout=s.poll_interval_seconds):
                return
            try:
                remaining = len(self._cp.list_statuses(s.label))
            except PerfBenchError as e:
                logger.warning("Status poll failed", error=str(e))
        logger.info("Previous workloads removed", label=s.label)

    def _provision(self) -> List[str]:
        s = self._settings
        try:
            self._cp.ensure_namespace(s.destination_namespace)
        except PerfBenchError as e:
            logger.warning("Could not ensure destination namespace", namespace=s.destination_namespace, error=str(e))
        specs = [s.workload(i) for i in range(1, s.count + 1)]
        created = self._submit_all(self._cp.create, specs, "create")
        if not created:
            raise ControlPlaneUnavailable(f"none of the {s.count} workloads could be created")
        if len(created) < len(specs):
            logger.warning("Some workloads were not created", created=len(created), target=s.count)
        return [spec.name for spec in created]

    def _wait(self, names: List[str], cancel: threading.Event) -> tuple[int, int, bool, bool]:
        s = self._settings
        expected = set(names)
        succeeded = failed = 0
        deadline = self._clock() + s.timeout_seconds
        while True:
            try:
                statuses = [st for st in self._cp.list_statuses(s.label) if st.name in expected]
                succeeded = sum(1 for st in statuses if st.succeeded)
                failed = sum(1 for st in statuses if st.failed)
            except PerfBenchError as e:
                logger.warning("Status poll failed", error=str(e))

            if succeeded + failed >= len(expected):
                return succeeded, failed, False, False
            remaining = deadline - self._clock()
            if remaining <= 0:
                return succeeded, failed, True, False
            logger.debug("Waiting for workloads", synced=succeeded, failed=failed, target=s.count)
            if cancel.wait(timeout=min(s.poll_interval_seconds, remaining)):
                return succeeded, failed, False, True

    def run(self, cancel: Optional[threading.Event] = None) -> RunRecord:
        s = self._settings
        cancel = cancel or threading.Event()
        started_at = datetime.now(timezone.utc)

        try:
            self._cp.ping()
        except ControlPlaneUnavailable:
            self._enter(Phase.FAILED)
            raise
        observed = self._cp.observed_settings()

        self._enter(Phase.PROVISIONING)
        try:
            self._clear_previous(cancel)
            start = self._clock()
            names = self._provision()
        except ControlPlaneUnavailable:
            self._enter(Phase.FAILED)
            raise

        measurements: List[Measurement] = []
        if s.refresh_burst and not cancel.is_set():
            self._enter(Phase.LOADING)
            burst_start = self._clock()
            refreshed = self._submit_all(self._cp.force_refresh, names, "refresh")
            measurements.append(
                Measurement(name="refresh_burst_seconds", value=self._clock() - burst_start, unit="s")
            )
            logger.info("Refresh burst submitted", refreshed=len(refreshed), target=len(names))

        self._enter(Phase.WAITING)
        succeeded, failed, timed_out, cancelled = self._wait(names, cancel)
        sync_seconds = self._clock() - start
        completed = succeeded + failed
        if completed < s.count:
            logger.warning(
                "Not all workloads reached a terminal state",
                kind=TIMEOUT_PARTIAL_COMPLETION,
                completed=completed,
                target=s.count,
                timed_out=timed_out,
                cancelled=cancelled,
            )
        else:
            logger.info("All workloads terminal", synced=succeeded, failed=failed, seconds=round(sync_seconds, 1))

        measurements = [
            Measurement(name="sync_seconds", value=sync_seconds, unit="s"),
            Measurement(name="apps_synced", value=float(succeeded), unit="count"),
            Measurement(name="apps_failed", value=float(failed), unit="count"),
            Measurement(name="apps_completed", value=float(completed), unit="count"),
        ] + measurements

        self._enter(Phase.SAMPLING)
        measurements += self._sampler.sample()

        record = RunRecord(
            label=s.label,
            timestamp=started_at,
            scenario_config={**asdict(s), "observed_settings": observed},
            target=s.count,
            completed=completed,
            timed_out=timed_out,
            cancelled=cancelled,
            measurements=measurements,
        )
        self._enter(Phase.DONE)
        return record
