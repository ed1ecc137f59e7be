import pytest

from perfbench.disk_pressure import TEST_FILE, DiskPressureScenario
from perfbench.errors import KubectlError
from perfbench.models import DiskPressureOutcome


def _pod(name, uid, phase="Running"):
    return {
        "metadata": {"name": name, "uid": uid},
        "status": {"phase": phase, "containerStatuses": [{"restartCount": 0}]},
    }


class FakeKubectl:
    """Answers the handful of kubectl calls the disk pressure scenario makes."""

    def __init__(self, size_limit="2Gi", pods=None, after=None, replacement=None, pressured=(), dd_hangs=False):
        self.dd_hangs = dd_hangs
        self.dd_timeout = None
        self.size_limit = size_limit
        self.pods = pods if pods is not None else [_pod("argocd-repo-server-a", "uid-a")]
        self.after = after
        self.replacement = replacement
        self.pressured = pressured
        self.commands = []
        self._running_lookups = 0

    def get_json(self, *args):
        kind = args[1]
        if kind in ("deployment", "statefulset"):
            volume = {"name": "tmp", "emptyDir": {}}
            if self.size_limit:
                volume["emptyDir"]["sizeLimit"] = self.size_limit
            volumes = [volume, dict(volume, name="argocd-application-controller-tmp")]
            return {"spec": {"template": {"spec": {"volumes": volumes}}}}
        if kind == "pods":
            self._running_lookups += 1
            if self._running_lookups > 1 and self.replacement is not None:
                return {"items": self.replacement}
            return {"items": self.pods}
        if kind == "pod":
            if self.after is None:
                raise KubectlError(list(args), "NotFound")
            return self.after
        if kind == "nodes":
            return {"items": [
                {
                    "metadata": {"name": name},
                    "status": {"conditions": [{"type": "DiskPressure", "status": "True" if name in self.pressured else "False"}]},
                }
                for name in ("node-1", "node-2")
            ]}
        raise AssertionError(f"unexpected get_json {args}")

    def run(self, *args, input=None, timeout=None):
        self.commands.append(args)
        if "dd" in args:
            self.dd_timeout = timeout
            if self.dd_hangs:
                raise KubectlError(list(args), f"timed out after {timeout}s", timed_out=True)
            raise KubectlError(list(args), "dd: error writing: No space left on device", 1)
        return ""


def _scenario(kubectl):
    return DiskPressureScenario(kubectl, write_mb=10, settle_seconds=0)


class TestDiskPressureScenario:
    def test_pod_survives(self):
        kubectl = FakeKubectl(after=_pod("argocd-repo-server-a", "uid-a"))
        result = _scenario(kubectl).run("repo-server")
        assert result.outcome is DiskPressureOutcome.POD_SURVIVED
        assert result.write_blocked is True
        assert result.node_disk_pressure is False
        assert result.passed
        assert ("exec", "-n", "argocd", "argocd-repo-server-a", "--", "rm", "-f", TEST_FILE) in kubectl.commands

    def test_pod_evicted_and_replaced(self):
        kubectl = FakeKubectl(
            after=_pod("argocd-repo-server-a", "uid-a", phase="Failed"),
            replacement=[_pod("argocd-repo-server-b", "uid-b")],
        )
        result = _scenario(kubectl).run("repo-server")
        assert result.outcome is DiskPressureOutcome.POD_EVICTED_REPLACED
        assert result.original_pod == "argocd-repo-server-a"
        assert result.current_pod == "argocd-repo-server-b"
        assert result.passed

    def test_pod_gone_without_replacement(self):
        kubectl = FakeKubectl(after=None, replacement=[])
        result = _scenario(kubectl).run("repo-server")
        assert result.outcome is DiskPressureOutcome.NO_REPLACEMENT
        assert not result.passed

    def test_missing_size_limit_stops_early(self):
        kubectl = FakeKubectl(size_limit=None)
        result = _scenario(kubectl).run("application-controller")
        assert result.outcome is None
        assert not result.passed
        assert kubectl.commands == []

    def test_no_running_pod(self):
        result = _scenario(FakeKubectl(pods=[])).run("repo-server")
        assert not result.passed
        assert result.checks[-1].name == "running pod found"

    def test_node_disk_pressure_fails(self):
        kubectl = FakeKubectl(after=_pod("argocd-repo-server-a", "uid-a"), pressured=("node-2",))
        result = _scenario(kubectl).run("repo-server")
        assert result.node_disk_pressure is True
        assert not result.passed
        assert result.checks[-1].detail == "node-2"

    def test_unknown_component(self):
        with pytest.raises(KeyError):
            _scenario(FakeKubectl()).run("dex")

    def test_write_gets_its_own_timeout(self):
        kubectl = FakeKubectl(after=_pod("argocd-repo-server-a", "uid-a"))
        DiskPressureScenario(kubectl, write_mb=10, settle_seconds=0, write_timeout_seconds=1200).run("repo-server")
        assert kubectl.dd_timeout == 1200

    def test_write_timeout_is_not_a_blocked_write(self):
        kubectl = FakeKubectl(after=_pod("argocd-repo-server-a", "uid-a"), dd_hangs=True)
        result = _scenario(kubectl).run("repo-server")
        assert result.write_blocked is False
        assert not result.passed
        failed = [c for c in result.checks if not c.passed]
        assert [c.name for c in failed] == ["test write finished"]
        assert "timed out" in failed[0].detail
