"""Tests for imagecertinfo.cluster module."""

from __future__ import annotations

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from imagecertinfo.cluster import ClusterClient, CommandResult, WorkloadReader
from imagecertinfo.errors import WorkloadReadError


def completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


# ═══════════════════════════════════════════════════════════════════════════
# CommandResult
# ═══════════════════════════════════════════════════════════════════════════


class TestCommandResult:
    def test_ok_property(self):
        r = CommandResult(command="kubectl version", returncode=0, stdout="ok", stderr="")
        assert r.ok is True

    def test_not_ok(self):
        r = CommandResult(command="kubectl fail", returncode=1, stdout="", stderr="err")
        assert r.ok is False

    def test_summary_truncation(self):
        r = CommandResult(command="cmd", returncode=0, stdout="x" * 3000, stderr="")
        assert len(r.summary) == 2000

    def test_summary_error(self):
        r = CommandResult(command="cmd", returncode=1, stdout="", stderr="bad thing")
        assert "ERROR" in r.summary
        assert "bad thing" in r.summary

    def test_not_found(self):
        r = CommandResult(
            command="cmd", returncode=1, stdout="", stderr='Error from server (NotFound): pods "x" not found'
        )
        assert r.not_found

    def test_not_found_requires_failure(self):
        r = CommandResult(command="cmd", returncode=0, stdout="not found", stderr="")
        assert not r.not_found

    def test_json(self):
        r = CommandResult(command="cmd", returncode=0, stdout='{"a": 1}', stderr="")
        assert r.json() == {"a": 1}


# ═══════════════════════════════════════════════════════════════════════════
# ClusterClient._run
# ═══════════════════════════════════════════════════════════════════════════


class TestClusterClientRun:
    def test_default_base_cmd(self):
        assert ClusterClient()._base_cmd == ["kubectl"]

    def test_kubeconfig_and_context(self):
        c = ClusterClient(kubeconfig="/tmp/kube.conf", context="prod")
        assert c._base_cmd == ["kubectl", "--kubeconfig", "/tmp/kube.conf", "--context", "prod"]

    @patch("subprocess.run")
    def test_successful_command(self, mock_run):
        mock_run.return_value = completed('{"items": []}')
        result = ClusterClient()._run(["get", "pods"])
        assert result.ok
        assert result.command == "kubectl get pods"

    @patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="kubectl", timeout=30))
    def test_timeout(self, mock_run):
        result = ClusterClient()._run(["get", "pods"])
        assert not result.ok
        assert "timed out" in result.stderr

    @patch("subprocess.run", side_effect=FileNotFoundError())
    def test_kubectl_not_found(self, mock_run):
        result = ClusterClient()._run(["get", "pods"])
        assert not result.ok
        assert "kubectl not found" in result.stderr

    @patch("subprocess.run")
    def test_stdin_passed_through(self, mock_run):
        mock_run.return_value = completed("{}")
        ClusterClient()._run(["create", "-f", "-"], stdin="payload")
        assert mock_run.call_args.kwargs["input"] == "payload"


# ═══════════════════════════════════════════════════════════════════════════
# Workload reads
# ═══════════════════════════════════════════════════════════════════════════


class TestWorkloadReads:
    def test_satisfies_workload_reader(self):
        assert isinstance(ClusterClient(), WorkloadReader)

    @patch("subprocess.run")
    def test_get_pod(self, mock_run):
        pod = {"metadata": {"name": "web-1", "namespace": "prod"}}
        mock_run.return_value = completed(json.dumps(pod))
        assert ClusterClient().get_pod("prod", "web-1") == pod
        assert mock_run.call_args[0][0] == ["kubectl", "get", "pod", "web-1", "-n", "prod", "-o", "json"]

    @patch("subprocess.run")
    def test_get_pod_gone(self, mock_run):
        mock_run.return_value = completed(stderr='pods "web-1" not found', returncode=1)
        assert ClusterClient().get_pod("prod", "web-1") is None

    @patch("subprocess.run")
    def test_get_pod_transient_failure(self, mock_run):
        mock_run.return_value = completed(stderr="connection refused", returncode=1)
        with pytest.raises(WorkloadReadError, match="connection refused"):
            ClusterClient().get_pod("prod", "web-1")

    @patch("subprocess.run")
    def test_get_pod_bad_json(self, mock_run):
        mock_run.return_value = completed("not json")
        with pytest.raises(WorkloadReadError):
            ClusterClient().get_pod("prod", "web-1")

    @patch("subprocess.run")
    def test_list_pods_all_namespaces(self, mock_run):
        mock_run.return_value = completed(json.dumps({"items": [{"metadata": {"name": "a"}}]}))
        pods = ClusterClient().list_pods()
        assert [p["metadata"]["name"] for p in pods] == ["a"]
        assert "--all-namespaces" in mock_run.call_args[0][0]

    @patch("subprocess.run")
    def test_list_pods_namespace(self, mock_run):
        mock_run.return_value = completed(json.dumps({"items": []}))
        ClusterClient().list_pods("prod")
        cmd = mock_run.call_args[0][0]
        assert cmd[-2:] == ["-n", "prod"]

    @patch("subprocess.run")
    def test_list_pods_failure(self, mock_run):
        mock_run.return_value = completed(stderr="forbidden", returncode=1)
        with pytest.raises(WorkloadReadError):
            ClusterClient().list_pods()


# ═══════════════════════════════════════════════════════════════════════════
# Manifest writes
# ═══════════════════════════════════════════════════════════════════════════


class TestManifestWrites:
    @patch("subprocess.run")
    def test_create_manifest(self, mock_run):
        mock_run.return_value = completed("{}")
        manifest = {"metadata": {"name": "rec"}}
        ClusterClient().create_manifest(manifest)
        assert mock_run.call_args[0][0] == ["kubectl", "create", "-f", "-", "-o", "json"]
        assert json.loads(mock_run.call_args.kwargs["input"]) == manifest

    @patch("subprocess.run")
    def test_replace_status_subresource(self, mock_run):
        mock_run.return_value = completed("{}")
        ClusterClient().replace_manifest({"metadata": {"name": "rec"}}, subresource="status")
        assert mock_run.call_args[0][0][-1] == "--subresource=status"

    @patch("subprocess.run")
    def test_replace_object(self, mock_run):
        mock_run.return_value = completed("{}")
        ClusterClient().replace_manifest({"metadata": {"name": "rec"}})
        assert not any(a.startswith("--subresource") for a in mock_run.call_args[0][0])
