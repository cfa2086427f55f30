"""Image registry and the workload identity allowed to use it.

The workload role is bound to exactly one Kubernetes service account through
the cluster's OIDC provider (IRSA). AWS compares the token's `sub` claim with
`system:serviceaccount:<namespace>:<service-account>` as a plain string, so the
names configured here must match the ServiceAccount in the GitOps manifests.
"""

import json
import pulumi
import pulumi_aws as aws
from typing import NamedTuple, Optional

from platform_layer.components.eks import oidc_issuer_host
from platform_layer.config import RegistryDescriptor

STS_AUDIENCE = "sts.amazonaws.com"

ECR_PULL_ACTIONS = [
  "ecr:BatchCheckLayerAvailability",
  "ecr:BatchGetImage",
  "ecr:GetDownloadUrlForLayer",
  "ecr:DescribeImages",
]

ECR_PUSH_ACTIONS = ECR_PULL_ACTIONS + [
  "ecr:InitiateLayerUpload",
  "ecr:UploadLayerPart",
  "ecr:CompleteLayerUpload",
  "ecr:PutImage",
]


class Registry(NamedTuple):
  repository: aws.ecr.Repository
  role: aws.iam.Role
  repository_url: pulumi.Output
  role_arn: pulumi.Output


def service_account_subject(namespace: str, service_account: str) -> str:
  return f"system:serviceaccount:{namespace}:{service_account}"


def irsa_trust_policy(provider_arn: str, issuer_url: str, namespace: str, service_account: str) -> str:
  host = oidc_issuer_host(issuer_url)
  return json.dumps({
    "Version": "2012-10-17",
    "Statement": [{
      "Effect": "Allow",
      "Principal": {"Federated": provider_arn},
      "Action": "sts:AssumeRoleWithWebIdentity",
      "Condition": {
        "StringEquals": {
          f"{host}:sub": service_account_subject(namespace, service_account),
          f"{host}:aud": STS_AUDIENCE,
        }
      },
    }],
  })


def repository_access_policy(repository_arn: str, actions: list) -> str:
  return json.dumps({
    "Version": "2012-10-17",
    "Statement": [
      {
        "Effect": "Allow",
        "Action": ["ecr:GetAuthorizationToken"],  # Cannot be scoped to a repository
        "Resource": "*",
      },
      {
        "Effect": "Allow",
        "Action": actions,
        "Resource": repository_arn,
      },
    ],
  })


def lifecycle_policy(max_image_count: int) -> str:
  return json.dumps({
    "rules": [
      {
        "rulePriority": 1,
        "description": "Expire untagged images after 7 days",
        "selection": {
          "tagStatus": "untagged",
          "countType": "sinceImagePushed",
          "countUnit": "days",
          "countNumber": 7,
        },
        "action": {"type": "expire"},
      },
      {
        "rulePriority": 2,
        "description": f"Keep the newest {max_image_count} images",
        "selection": {
          "tagStatus": "any",
          "countType": "imageCountMoreThan",
          "countNumber": max_image_count,
        },
        "action": {"type": "expire"},
      },
    ]
  })


def create_registry(
    registry_config: RegistryDescriptor,
    oidc_provider_arn: pulumi.Input[str],
    oidc_provider_url: pulumi.Input[str],
    tags: Optional[dict] = None,
) -> Registry:
  """
  Create the ECR repository and the IRSA role for the application workload.

  Args:
    registry_config: repository settings and the namespace/service account pair
    oidc_provider_arn: ARN of the cluster's IAM OIDC provider
    oidc_provider_url: issuer URL of that provider, with or without scheme
    tags: AWS resource tags
  """
  if tags is None:
    tags = {}
  name = registry_config.repository_name.replace("/", "-")

  # 1. ECR repository for the application images
  repository = aws.ecr.Repository(f"{name}-registry",
    name=registry_config.repository_name,
    image_tag_mutability=registry_config.image_tag_mutability,  # CI tags with the commit SHA; never overwritten
    force_delete=registry_config.force_delete,
    image_scanning_configuration=aws.ecr.RepositoryImageScanningConfigurationArgs(
      scan_on_push=registry_config.scan_on_push
    ),
    encryption_configurations=[aws.ecr.RepositoryEncryptionConfigurationArgs(
      encryption_type="AES256",
    )],
    tags=tags
  )

  aws.ecr.LifecyclePolicy(f"{name}-lifecycle",
    repository=repository.name,
    policy=lifecycle_policy(registry_config.max_image_count),
    opts=pulumi.ResourceOptions(parent=repository),
  )

  # 2. Role the workload assumes through its service account token
  role = aws.iam.Role(f"{name}-workload-role",
    assume_role_policy=pulumi.Output.all(oidc_provider_arn, oidc_provider_url).apply(
      lambda args: irsa_trust_policy(args[0], args[1], registry_config.namespace, registry_config.service_account)
    ),
    description=f"IRSA role for {service_account_subject(registry_config.namespace, registry_config.service_account)}",
    tags=tags,
  )

  aws.iam.RolePolicy(f"{name}-workload-ecr-policy",
    role=role.id,
    policy=repository.arn.apply(lambda arn: repository_access_policy(arn, ECR_PULL_ACTIONS)),
    opts=pulumi.ResourceOptions(parent=role),
  )

  pulumi.export("repository_url", repository.repository_url)
  pulumi.export("workload_role_arn", role.arn)
  pulumi.export("workload_service_account", service_account_subject(
    registry_config.namespace, registry_config.service_account))

  return Registry(repository=repository, role=role, repository_url=repository.repository_url, role_arn=role.arn)
