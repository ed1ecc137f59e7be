import json
from unittest.mock import MagicMock

import pytest

from perfbench.control_plane import (
    REFRESH_ANNOTATION,
    SUITE_LABEL,
    ArgoApplicationControlPlane,
    WorkloadSpec,
    WorkloadStatus,
    empty_dir_size_limit,
    parse_controller_args,
)
from perfbench.errors import ControlPlaneUnavailable, KubectlError


def _app(name, sync="Synced", health="Healthy", phase=None):
    app = {"metadata": {"name": name}, "status": {"sync": {"status": sync}, "health": {"status": health}}}
    if phase:
        app["status"]["operationState"] = {"phase": phase}
    return app


@pytest.fixture
def spec():
    return WorkloadSpec(
        name="tuned-app-1",
        label="tuned",
        namespace="argocd",
        destination_namespace="test-apps",
        repo_url="https://github.com/argoproj/argocd-example-apps",
        path="guestbook",
    )


@pytest.fixture
def kubectl():
    return MagicMock()


class TestWorkloadSpec:
    def test_manifest(self, spec):
        manifest = spec.to_manifest()
        assert manifest["kind"] == "Application"
        assert manifest["metadata"]["labels"] == {SUITE_LABEL: "tuned"}
        assert manifest["spec"]["destination"]["namespace"] == "test-apps"
        assert manifest["spec"]["source"]["targetRevision"] == "HEAD"
        assert manifest["spec"]["syncPolicy"]["automated"] == {"prune": True, "selfHeal": True}


class TestWorkloadStatus:
    def test_synced(self):
        status = WorkloadStatus.from_application(_app("a"))
        assert status.succeeded
        assert status.terminal

    def test_failed_operation(self):
        status = WorkloadStatus.from_application(_app("a", sync="OutOfSync", phase="Failed"))
        assert status.failed
        assert status.terminal

    def test_in_progress(self):
        status = WorkloadStatus.from_application(_app("a", sync="OutOfSync", health="Progressing", phase="Running"))
        assert not status.terminal

    def test_no_status_yet(self):
        status = WorkloadStatus.from_application({"metadata": {"name": "a"}})
        assert status.sync_status == "Unknown"
        assert not status.terminal


class TestParsing:
    def test_controller_args(self):
        args = [
            "/usr/local/bin/argocd-application-controller",
            "--operation-processors=25",
            "--status-processors", "50",
            "--loglevel", "info",
            "--kubectl-parallelism-limit",
        ]
        assert parse_controller_args(args) == {"operation-processors": "25", "status-processors": "50"}

    def test_size_limit(self):
        deploy = {"spec": {"template": {"spec": {"volumes": [
            {"name": "gpg-keys", "emptyDir": {}},
            {"name": "tmp", "emptyDir": {"sizeLimit": "2Gi"}},
        ]}}}}
        assert empty_dir_size_limit(deploy, "tmp") == "2Gi"
        assert empty_dir_size_limit(deploy, "gpg-keys") is None
        assert empty_dir_size_limit({}, "tmp") is None


class TestArgoApplicationControlPlane:
    def test_ping_failure(self, kubectl):
        kubectl.run.side_effect = KubectlError(["get", "namespace", "argocd"], "connection refused")
        with pytest.raises(ControlPlaneUnavailable):
            ArgoApplicationControlPlane(kubectl).ping()

    def test_create_applies_manifest(self, kubectl, spec):
        assert ArgoApplicationControlPlane(kubectl).create(spec) == "tuned-app-1"
        args, kwargs = kubectl.run.call_args
        assert args == ("apply", "-f", "-")
        assert json.loads(kwargs["input"])["metadata"]["name"] == "tuned-app-1"

    def test_force_refresh(self, kubectl):
        ArgoApplicationControlPlane(kubectl).force_refresh("tuned-app-1")
        args = kubectl.run.call_args[0]
        assert args[:2] == ("patch", "application")
        patch = json.loads(args[args.index("-p") + 1])
        assert patch["metadata"]["annotations"][REFRESH_ANNOTATION] == "hard"

    def test_list_statuses(self, kubectl):
        kubectl.get_json.return_value = {"items": [_app("tuned-app-1"), _app("tuned-app-2", sync="OutOfSync")]}
        statuses = ArgoApplicationControlPlane(kubectl).list_statuses("tuned")
        assert [s.succeeded for s in statuses] == [True, False]
        assert f"{SUITE_LABEL}=tuned" in kubectl.get_json.call_args[0]

    def test_delete_is_idempotent(self, kubectl):
        ArgoApplicationControlPlane(kubectl).delete("tuned-app-1")
        assert "--ignore-not-found=true" in kubectl.run.call_args[0]

    def test_observed_settings(self, kubectl):
        def get_json(*args):
            if args[1] == "statefulset":
                return {"spec": {"template": {"spec": {"containers": [
                    {"args": ["argocd-application-controller", "--operation-processors=25"]},
                ]}}}}
            if args[1] == "configmap":
                return {"data": {"controller.status.processors": "50"}}
            return {"spec": {"template": {"spec": {"volumes": [{"name": "tmp", "emptyDir": {"sizeLimit": "2Gi"}}]}}}}

        kubectl.get_json.side_effect = get_json
        assert ArgoApplicationControlPlane(kubectl).observed_settings() == {
            "operation-processors": "25",
            "cmd_params.controller.status.processors": "50",
            "repo_server_tmp_size_limit": "2Gi",
        }

    def test_observed_settings_best_effort(self, kubectl):
        kubectl.get_json.side_effect = KubectlError(["get"], "forbidden")
        assert ArgoApplicationControlPlane(kubectl).observed_settings() == {}
