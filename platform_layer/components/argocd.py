import pulumi
import pulumi_kubernetes as kubernetes
import pulumi_kubernetes.helm.v4 as helm

from platform_layer.config import GitOpsDescriptor

IRSA_ANNOTATION = "eks.amazonaws.com/role-arn"
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"


def _json_pointer(key: str) -> str:
  return key.replace("~", "~0").replace("/", "~1")


def application_manifest(gitops: GitOpsDescriptor, service_account: str, role_arn: str) -> dict:
  """Argo CD Application syncing the overlay directory into the workload namespace.

  The workload role ARN only exists after the registry component is applied, so
  instead of committing it to Git it is injected as a Kustomize patch on the
  ServiceAccount the IRSA trust condition names.
  """
  return {
    "apiVersion": "argoproj.io/v1alpha1",
    "kind": "Application",
    "metadata": {
      "name": gitops.application_name,
      "namespace": gitops.namespace,
      "finalizers": ["resources-finalizer.argocd.argoproj.io"],  # Deleting the app deletes what it deployed
    },
    "spec": {
      "project": "default",
      "source": {
        "repoURL": gitops.repo_url,
        "path": gitops.path,
        "targetRevision": gitops.target_revision,
        "kustomize": {
          "patches": [{
            "target": {"kind": "ServiceAccount", "name": service_account},
            "patch": (
              '[{"op": "add", "path": "/metadata/annotations/'
              f'{_json_pointer(IRSA_ANNOTATION)}", "value": "{role_arn}"}}]'
            ),
          }],
        },
      },
      "destination": {
        "server": IN_CLUSTER_SERVER,
        "namespace": gitops.destination_namespace,
      },
      "syncPolicy": {
        "automated": {
          "prune": gitops.prune,         # Delete resources removed from Git
          "selfHeal": gitops.self_heal,  # Revert drift made outside Git
        },
        "syncOptions": ["CreateNamespace=true"],
      },
    },
  }


def create_argocd(
    gitops: GitOpsDescriptor,
    k8s_provider: kubernetes.Provider,
    service_account: str,
    role_arn: pulumi.Input[str],
):

  # Create namespace
  ns = kubernetes.core.v1.Namespace("argocd-ns",
    metadata=kubernetes.meta.v1.ObjectMetaArgs(
      name=gitops.namespace
    ),
    opts=pulumi.ResourceOptions(provider=k8s_provider)
  )

  # Install Argo CD using Helm v4
  argocd_chart = helm.Chart("argocd",
    chart="argo-cd",
    version=gitops.chart_version,                   # Pin to stable version
    repository_opts=helm.RepositoryOptsArgs(
      repo="https://argoproj.github.io/argo-helm"
    ),
    namespace=gitops.namespace,
    values={
      "global": {
        "networkPolicy": {
          "create": False
        },
      },
      "server": {
        "service": {
          "type": "ClusterIP"                       # No external access; use port-forward
        },
        "ingress": {
          "enabled": False
        },
        "replicas": 1,
        "resources": {
          "requests": {"cpu": "100m", "memory": "128Mi"},
          "limits": {"cpu": "200m", "memory": "256Mi"},
        },
      },
      # Repo Server: Handles Git cloning/Kustomize rendering
      "repoServer": {
        "replicas": 1,
        "resources": {
          "requests": {"cpu": "200m", "memory": "256Mi"},
          "limits": {"cpu": "500m", "memory": "512Mi"},
        },
      },
      "controller": {
        "replicas": 1,
        "resources": {
          "requests": {"cpu": "100m", "memory": "128Mi"},
          "limits": {"cpu": "500m", "memory": "512Mi"},
        },
      },
      "redis-ha": {
        "enabled": False
      },
      # Dex (SSO) and notifications are not needed for a single GitOps app
      "dex": {
        "enabled": False
      },
      "notifications": {
        "enabled": False
      },
      "applicationSet": {
        "enabled": False
      },
      "configs": {
        "cm": {
          "timeout.reconciliation": "180s"          # Git polling interval
        },
      },
    },
    skip_crds=False, # Install CRDs (required for the Application below)
    opts=pulumi.ResourceOptions(
      provider=k8s_provider,
      depends_on=[ns]
    )
  )

  manifest = pulumi.Output.from_input(role_arn).apply(
    lambda arn: application_manifest(gitops, service_account, arn)
  )
  application = kubernetes.apiextensions.CustomResource("argocd-application",
    api_version="argoproj.io/v1alpha1",
    kind="Application",
    metadata=manifest["metadata"],
    spec=manifest["spec"],
    opts=pulumi.ResourceOptions(
      provider=k8s_provider,
      depends_on=[argocd_chart]
    )
  )

  pulumi.export("argocd_namespace", gitops.namespace)
  pulumi.export("argocd_application", gitops.application_name)
  # To access: kubectl port-forward svc/argocd-server -n argocd 8080:443
  # Initial password: kubectl -n argocd get secret argocd-initial-admin-secret -o jsonpath='{.data.password}'

  return application
