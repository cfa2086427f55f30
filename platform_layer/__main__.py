"""Platform lifecycle layer of infrastructure project"""

import pulumi
import pulumi_kubernetes as kubernetes
from platform_layer.config import load_platform_config
from platform_layer.components.state_backend import create_state_backend
from platform_layer.components.vpc import create_vpc
from platform_layer.components.eks import create_k8s_cluster
from platform_layer.components.registry import create_registry
from platform_layer.components.ci_identity import create_ci_identity
from platform_layer.components.argocd import create_argocd

# Validates every descriptor; a bad stack file stops here before any resource is registered
platform = load_platform_config()

# GitHub token for repository variables - set via: pulumi config set --secret github:token <token>
# Or set GITHUB_TOKEN environment variable
gh_config = pulumi.Config("github")
gh_token = gh_config.get_secret("token")  # Optional - will use GITHUB_TOKEN env var if not set

if platform.state_bucket_name:
  create_state_backend(platform.state_bucket_name, tags=platform.tags)

vpc = create_vpc(platform.network, platform.cluster.name, tags=platform.tags)
cluster = create_k8s_cluster(platform.cluster, vpc, tags=platform.tags)
registry = create_registry(
  platform.registry,
  cluster.oidc_provider_arn,
  cluster.oidc_provider_url,
  tags=platform.tags,
)

if platform.gitops:
  k8s_provider = kubernetes.Provider("k8s-provider",
    kubeconfig=cluster.kubeconfig,
    opts=pulumi.ResourceOptions(depends_on=[cluster])
  )
  create_argocd(platform.gitops, k8s_provider, platform.registry.service_account, registry.role_arn)

if platform.ci:
  create_ci_identity(platform.ci, registry.repository, platform.region, tags=platform.tags, github_token=gh_token)
