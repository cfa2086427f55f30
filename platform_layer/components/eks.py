import json
import pulumi
import pulumi_aws as aws
import pulumi_awsx as awsx
import pulumi_eks as eks
from typing import Optional

from platform_layer.config import ClusterDescriptor

CLUSTER_ADMIN_POLICY_ARN = "arn:aws:eks::aws:cluster-access-policy/AmazonEKSClusterAdminPolicy"

NODE_POLICY_ARNS = [
  "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
  "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
  "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",  # Nodes pull from the app registry
]


def oidc_issuer_host(url: str) -> str:
  """IAM condition keys use the issuer without its scheme"""
  return url[len("https://"):] if url.startswith("https://") else url


def kubeconfig_server(kubeconfig) -> str:
  # The generated kubeconfig points at the control plane endpoint
  if isinstance(kubeconfig, str):
    kubeconfig = json.loads(kubeconfig)
  return kubeconfig["clusters"][0]["cluster"]["server"]


def create_node_role(name: str, tags: Optional[dict] = None) -> aws.iam.Role:
  role = aws.iam.Role(f"{name}-node-role",
    assume_role_policy=json.dumps({
      "Version": "2012-10-17",
      "Statement": [{
        "Effect": "Allow",
        "Principal": {"Service": "ec2.amazonaws.com"},
        "Action": "sts:AssumeRole",
      }],
    }),
    tags=tags,
  )
  for index, policy_arn in enumerate(NODE_POLICY_ARNS):
    aws.iam.RolePolicyAttachment(f"{name}-node-role-policy-{index}",
      role=role.name,
      policy_arn=policy_arn,
      opts=pulumi.ResourceOptions(parent=role),
    )
  return role


def admin_access_entries(principal_arn: Optional[str]) -> dict:
  if not principal_arn:
    return {}
  return {
    "admin": eks.AccessEntryArgs(
      principal_arn=principal_arn,
      access_policies={
        "cluster-admin": eks.AccessPolicyAssociationArgs(
          policy_arn=CLUSTER_ADMIN_POLICY_ARN,
          access_scope=aws.eks.AccessPolicyAssociationAccessScopeArgs(type="cluster"),
        ),
      },
    ),
  }


def create_k8s_cluster(cluster_config: ClusterDescriptor, vpc: awsx.ec2.Vpc, tags: Optional[dict] = None) -> eks.Cluster:
  if tags is None:
    tags = {}

  name = cluster_config.name
  node_role = create_node_role(name, tags=tags)

  # 1. Control plane. The default node group is skipped; pools are declared below.
  # EKS creates the node role access entry itself for managed node groups
  cluster = eks.Cluster(name,
    name=name,
    version=cluster_config.version,             # Pinned Kubernetes version
    vpc_id=vpc.vpc_id,                          # Use the VPC we created
    public_subnet_ids=vpc.public_subnet_ids,    # For load balancers (internet facing)
    private_subnet_ids=vpc.private_subnet_ids,  # For worker nodes (private)
    node_associate_public_ip_address=False,
    endpoint_private_access=cluster_config.endpoint_private_access,
    endpoint_public_access=True,
    public_access_cidrs=cluster_config.public_access_cidrs,
    enabled_cluster_log_types=cluster_config.enabled_log_types,
    authentication_mode=eks.AuthenticationMode.API,
    access_entries=admin_access_entries(cluster_config.admin_principal_arn),
    skip_default_node_group=True,
    # IRSA (IAM Roles for Service Accounts):
    create_oidc_provider=True,                  # Lets pods assume IAM Roles
    tags=tags
  )

  # 2. One managed node group per configured pool, all in the private subnets
  for pool in cluster_config.node_pools:
    eks.ManagedNodeGroup(f"{name}-{pool.name}",
      cluster=cluster,
      node_group_name=f"{name}-{pool.name}",
      node_role=node_role,
      subnet_ids=vpc.private_subnet_ids,
      instance_types=pool.instance_types,
      capacity_type=pool.capacity_type,
      disk_size=pool.disk_size,
      scaling_config=aws.eks.NodeGroupScalingConfigArgs(
        desired_size=pool.desired_size,
        min_size=pool.min_size,
        max_size=pool.max_size,
      ),
      labels={"node-pool": pool.name, **pool.labels},
      tags=tags,
      opts=pulumi.ResourceOptions(parent=cluster),
    )

  # 3. Export critical details
  pulumi.export("kubeconfig", pulumi.Output.secret(cluster.kubeconfig))
  pulumi.export("cluster_name", name)
  pulumi.export("cluster_endpoint", cluster.kubeconfig.apply(kubeconfig_server))
  pulumi.export("cluster_oidc_url", cluster.oidc_provider_url)
  pulumi.export("cluster_oidc_provider_arn", cluster.oidc_provider_arn)

  return cluster
