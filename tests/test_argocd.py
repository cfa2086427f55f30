"""Tests for the Argo CD install and Application."""

import json

import pulumi
import pulumi_kubernetes as kubernetes
import pulumi_kubernetes.helm.v4 as helm
import pytest

from platform_layer.components.argocd import application_manifest, create_argocd
from platform_layer.config import GitOpsDescriptor

ROLE_ARN = "arn:aws:iam::123456789012:role/app-workload-role"


@pytest.fixture
def gitops():
  return GitOpsDescriptor(
    repo_url="https://github.com/example-org/app.git",
    path="deploy/overlays/dev",
    destination_namespace="app",
  )


def test_source_and_destination(gitops):
  manifest = application_manifest(gitops, "app-sa", ROLE_ARN)

  assert manifest["apiVersion"] == "argoproj.io/v1alpha1"
  assert manifest["metadata"]["namespace"] == "argocd"
  source = manifest["spec"]["source"]
  assert (source["repoURL"], source["path"], source["targetRevision"]) == (
    "https://github.com/example-org/app.git", "deploy/overlays/dev", "HEAD")
  assert manifest["spec"]["destination"] == {"server": "https://kubernetes.default.svc", "namespace": "app"}


@pytest.mark.parametrize("prune,self_heal", [(True, True), (False, True), (True, False), (False, False)])
def test_sync_policy_flags(prune, self_heal):
  gitops = GitOpsDescriptor("https://github.com/example-org/app.git", "deploy/overlays/dev", "app",
                            prune=prune, self_heal=self_heal)

  sync_policy = application_manifest(gitops, "app-sa", ROLE_ARN)["spec"]["syncPolicy"]

  assert sync_policy["automated"] == {"prune": prune, "selfHeal": self_heal}
  assert "CreateNamespace=true" in sync_policy["syncOptions"]


def test_service_account_patched_with_role(gitops):
  (patch,) = application_manifest(gitops, "app-sa", ROLE_ARN)["spec"]["source"]["kustomize"]["patches"]

  assert patch["target"] == {"kind": "ServiceAccount", "name": "app-sa"}
  assert json.loads(patch["patch"]) == [{
    "op": "add",
    "path": "/metadata/annotations/eks.amazonaws.com~1role-arn",
    "value": ROLE_ARN,
  }]


class TestCreateArgoCd:

  def _run(self, gitops):
    @pulumi.runtime.test
    def program():
      k8s_provider = kubernetes.Provider("k8s-provider", kubeconfig="{}")
      create_argocd(gitops, k8s_provider, "app-sa", pulumi.Output.from_input(ROLE_ARN))

    program()

  def test_chart_installed_in_its_namespace(self, mocks, gitops):
    self._run(gitops)

    (namespace,) = mocks.of_type("kubernetes:core/v1:Namespace")
    assert namespace.inputs["metadata"]["name"] == "argocd"
    (chart,) = mocks.of_type("kubernetes:helm.sh/v4:Chart")
    assert (chart.inputs["chart"], chart.inputs["version"], chart.inputs["namespace"]) == ("argo-cd", "7.7.11", "argocd")
    assert chart.inputs["values"]["dex"] == {"enabled": False}

  def test_application_carries_role_patch(self, mocks, gitops):
    self._run(gitops)

    (application,) = mocks.of_type("kubernetes:argoproj.io/v1alpha1:Application")
    assert application.inputs["metadata"]["name"] == "workloads"
    assert application.inputs["metadata"]["namespace"] == "argocd"
    spec = application.inputs["spec"]
    assert spec["destination"]["namespace"] == "app"
    assert spec["syncPolicy"]["automated"] == {"prune": True, "selfHeal": True}
    (patch,) = spec["source"]["kustomize"]["patches"]
    assert json.loads(patch["patch"])[0]["value"] == ROLE_ARN

  def test_application_depends_on_chart(self, mocks, gitops, monkeypatch):
    options = []
    custom_resource = kubernetes.apiextensions.CustomResource

    def recording_custom_resource(resource_name, **kwargs):
      options.append(kwargs["opts"])
      return custom_resource(resource_name, **kwargs)

    monkeypatch.setattr(kubernetes.apiextensions, "CustomResource", recording_custom_resource)
    self._run(gitops)

    (opts,) = options
    (dependency,) = opts.depends_on
    assert isinstance(dependency, helm.Chart)
