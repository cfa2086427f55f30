"""
Pytest configuration and shared fixtures.

- mocks: Pulumi mock monitor, reset for every test, recording each resource
- network_settings / cluster_settings / registry_settings: stack-file shaped dicts
"""

import pulumi
import pytest

ACCOUNT_ID = "123456789012"
REGION = "eu-west-1"
OIDC_ISSUER = "oidc.eks.eu-west-1.amazonaws.com/id/EXAMPLED539D4633E53DE1B71EXAMPLE"


class PlatformMocks(pulumi.runtime.Mocks):
  """Echo inputs back as state and fill in the attributes AWS would compute."""

  def __init__(self):
    self.resources = []
    self.calls = []

  def new_resource(self, args: pulumi.runtime.MockResourceArgs):
    self.resources.append(args)
    outputs = dict(args.inputs)
    if args.typ == "aws:iam/role:Role":
      outputs["arn"] = f"arn:aws:iam::{ACCOUNT_ID}:role/{args.name}"
    elif args.typ == "aws:ecr/repository:Repository":
      repository = args.inputs.get("name", args.name)
      outputs["arn"] = f"arn:aws:ecr:{REGION}:{ACCOUNT_ID}:repository/{repository}"
      outputs["repositoryUrl"] = f"{ACCOUNT_ID}.dkr.ecr.{REGION}.amazonaws.com/{repository}"
    elif args.typ == "aws:iam/openIdConnectProvider:OpenIdConnectProvider":
      outputs["arn"] = f"arn:aws:iam::{ACCOUNT_ID}:oidc-provider/token.actions.githubusercontent.com"
    elif args.typ == "aws:s3/bucketV2:BucketV2":
      outputs["arn"] = f"arn:aws:s3:::{args.inputs.get('bucket', args.name)}"
    elif args.typ == "aws:kms/key:Key":
      outputs["arn"] = f"arn:aws:kms:{REGION}:{ACCOUNT_ID}:key/{args.name}"
    elif args.typ == "awsx:ec2:Vpc":
      zones = len(args.inputs.get("availabilityZoneNames", []))
      outputs["vpcId"] = "vpc-0123456789"
      outputs["publicSubnetIds"] = [f"subnet-public-{i}" for i in range(zones)]
      outputs["privateSubnetIds"] = [f"subnet-private-{i}" for i in range(zones)]
    elif args.typ == "eks:index:Cluster":
      outputs["kubeconfig"] = {"clusters": [{"cluster": {"server": f"https://{args.name}.eks.example.com"}}]}
      outputs["oidcProviderArn"] = f"arn:aws:iam::{ACCOUNT_ID}:oidc-provider/{OIDC_ISSUER}"
      outputs["oidcProviderUrl"] = f"https://{OIDC_ISSUER}"
    return [f"{args.name}_id", outputs]

  def call(self, args: pulumi.runtime.MockCallArgs):
    self.calls.append(args)
    if args.token == "tls:index/getCertificate:getCertificate":
      return {
        "id": "github",
        "url": args.args.get("url"),
        "certificates": [  # Root of the chain first, as pulumi_tls returns it
          {"sha1Fingerprint": "root1111111111111111111111111111111111", "isCa": True},
          {"sha1Fingerprint": "leaf0000000000000000000000000000000000", "isCa": False},
        ],
      }
    return {}

  def of_type(self, typ: str) -> list:
    return [r for r in self.resources if r.typ == typ]


@pytest.fixture
def mocks():
  """Fresh mock monitor for each test."""
  mocks = PlatformMocks()
  pulumi.runtime.set_mocks(mocks, project="platform-layer", stack="test", preview=False)
  return mocks


@pytest.fixture
def network_settings() -> dict:
  return {
    "cidr-block": "10.0.0.0/16",
    "availability-zones": ["eu-west-1a", "eu-west-1b"],
    "public-subnet-cidrs": ["10.0.0.0/24", "10.0.1.0/24"],
    "private-subnet-cidrs": ["10.0.16.0/20", "10.0.32.0/20"],
  }


@pytest.fixture
def cluster_settings() -> dict:
  return {
    "name": "platform-test",
    "version": "1.31",
    "node-pools": [
      {"name": "general", "instance-types": ["t3.medium"], "desired-size": 2, "min-size": 1, "max-size": 3},
    ],
  }


@pytest.fixture
def registry_settings() -> dict:
  return {
    "repository-name": "app",
    "namespace": "app",
    "service-account": "app-sa",
  }
