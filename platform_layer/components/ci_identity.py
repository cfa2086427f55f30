import json
import pulumi
import pulumi_aws as aws
import pulumi_github as github
import pulumi_tls as tls
from typing import Optional

from platform_layer.components.registry import ECR_PUSH_ACTIONS, STS_AUDIENCE, repository_access_policy
from platform_layer.config import CiDescriptor

GITHUB_OIDC_HOST = "token.actions.githubusercontent.com"


def github_subjects(owner: str, repo: str, branch: str) -> list:
  # Only workflows running on the deploy branch may push images
  return [f"repo:{owner}/{repo}:ref:refs/heads/{branch}"]


def github_trust_policy(provider_arn: str, owner: str, repo: str, branch: str) -> str:
  return json.dumps({
    "Version": "2012-10-17",
    "Statement": [{
      "Effect": "Allow",
      "Principal": {"Federated": provider_arn},
      "Action": "sts:AssumeRoleWithWebIdentity",
      "Condition": {
        "StringEquals": {
          f"{GITHUB_OIDC_HOST}:aud": STS_AUDIENCE,
          f"{GITHUB_OIDC_HOST}:sub": github_subjects(owner, repo, branch),
        },
      },
    }],
  })


def create_ci_identity(
    ci: CiDescriptor,
    repository: aws.ecr.Repository,
    region: str,
    tags: Optional[dict] = None,
    github_token: pulumi.Output[str] = None,
) -> aws.iam.Role:
  if tags is None:
    tags = {}
  name = f"ci-{ci.github_repo}"

  # 1. Trust GitHub's token issuer. The thumbprint is the root of the issuer's TLS chain (listed first)
  certificate = tls.get_certificate_output(url=f"https://{GITHUB_OIDC_HOST}")
  provider = aws.iam.OpenIdConnectProvider(f"{name}-github-oidc",
    url=f"https://{GITHUB_OIDC_HOST}",
    client_id_lists=[STS_AUDIENCE],
    thumbprint_lists=[certificate.certificates.apply(lambda certs: certs[0].sha1_fingerprint)],
    tags=tags,
  )

  # 2. Role the workflow assumes via aws-actions/configure-aws-credentials
  role = aws.iam.Role(f"{name}-role",
    assume_role_policy=provider.arn.apply(
      lambda arn: github_trust_policy(arn, ci.github_owner, ci.github_repo, ci.branch)
    ),
    description=f"GitHub Actions role for {ci.github_owner}/{ci.github_repo}",
    tags=tags,
  )

  aws.iam.RolePolicy(f"{name}-ecr-push-policy",
    role=role.id,
    policy=repository.arn.apply(lambda arn: repository_access_policy(arn, ECR_PUSH_ACTIONS)),
    opts=pulumi.ResourceOptions(parent=role),
  )

  # 3. Hand the identifiers to the workflow as repository variables
  # Requires GITHUB_TOKEN env var or github:token in Pulumi config
  if ci.manage_repository_variables:
    gh_provider = github.Provider(f"{name}-github-provider",
      owner=ci.github_owner,
      token=github_token,  # Will use GITHUB_TOKEN env var if None
    )
    variables = {
      "AWS_ROLE_ARN": role.arn,
      "AWS_REGION": region,
      "ECR_REPOSITORY_URL": repository.repository_url,
    }
    for variable_name, value in variables.items():
      github.ActionsVariable(f"{name}-{variable_name.lower().replace('_', '-')}",
        repository=ci.github_repo,
        variable_name=variable_name,
        value=value,
        opts=pulumi.ResourceOptions(provider=gh_provider),
      )

  pulumi.export("ci_role_arn", role.arn)
  pulumi.export("ci_oidc_provider_arn", provider.arn)

  return role
