"""Stack configuration for the platform layer.

Everything the program declares is parameterized by the descriptors below. They
are built (and validated) from `Pulumi.<stack>.yaml` before any resource is
registered, so a bad stack file fails `pulumi preview` without touching AWS.

Example `Pulumi.dev.yaml` excerpt:

  platform:network:
    cidr-block: 10.0.0.0/16
    availability-zones: [eu-west-1a, eu-west-1b]
    public-subnet-cidrs: [10.0.0.0/24, 10.0.1.0/24]
    private-subnet-cidrs: [10.0.16.0/20, 10.0.32.0/20]
"""

import dataclasses
import ipaddress
import re
from typing import Any, Dict, List, Optional

import pulumi

CONFIG_NAMESPACE = "platform"

NAT_STRATEGIES = ("single", "one-per-az")
CAPACITY_TYPES = ("ON_DEMAND", "SPOT")
TAG_MUTABILITY = ("MUTABLE", "IMMUTABLE")
CONTROL_PLANE_LOG_TYPES = ("api", "audit", "authenticator", "controllerManager", "scheduler")

# Kubernetes object names (namespaces, service accounts) are RFC 1123 labels
DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")


class ConfigurationError(ValueError):
  """Stack configuration rejected before the graph is materialized."""


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
  # Stack files conventionally use kebab-case keys
  return {key.replace("-", "_"): value for key, value in (data or {}).items()}


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
  data = _normalize_keys(data)
  names = {f.name for f in dataclasses.fields(cls)}
  unknown = sorted(set(data) - names)
  if unknown:
    raise ConfigurationError(f"Unknown {cls.__name__} setting(s): {', '.join(unknown)}")
  return data


def _build(cls, data: Dict[str, Any]):
  missing = [f.name for f in dataclasses.fields(cls)
             if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING and f.name not in data]
  if missing:
    raise ConfigurationError(f"Missing {cls.__name__} setting(s): {', '.join(missing)}")
  return cls(**data)


def _network(cidr: str, what: str) -> ipaddress.IPv4Network:
  try:
    return ipaddress.IPv4Network(cidr, strict=True)
  except ValueError as e:
    raise ConfigurationError(f"{what} {cidr!r} is not a valid IPv4 CIDR block: {e}") from e


@dataclasses.dataclass(frozen=True)
class NetworkDescriptor:
  cidr_block: str
  availability_zones: List[str]
  public_subnet_cidrs: List[str]
  private_subnet_cidrs: List[str]
  nat_strategy: str = "single"
  enable_dns_hostnames: bool = True

  def __post_init__(self):
    self.validate()

  def validate(self) -> None:
    """Reject the descriptor unless zones, public and private blocks line up.

    Zone i receives public block i and private block i, so the three lists
    must have the same length. Blocks must also sit inside the VPC range and
    must not overlap each other.
    """
    zones = len(self.availability_zones)
    public = len(self.public_subnet_cidrs)
    private = len(self.private_subnet_cidrs)
    if not (zones == public == private):
      raise ConfigurationError(
        "availability_zones, public_subnet_cidrs and private_subnet_cidrs must have the same length "
        f"(got {zones} zones, {public} public blocks, {private} private blocks)"
      )
    if zones == 0:
      raise ConfigurationError("At least one availability zone must be specified")
    if len(set(self.availability_zones)) != zones:
      raise ConfigurationError(f"Duplicate availability zones: {self.availability_zones}")
    if self.nat_strategy == "none":
      # Node groups live in the private subnets and reach ECR, STS and the API through NAT
      raise ConfigurationError("nat_strategy 'none' leaves the private node subnets without egress")
    if self.nat_strategy not in NAT_STRATEGIES:
      raise ConfigurationError(f"nat_strategy must be one of {NAT_STRATEGIES}, got {self.nat_strategy!r}")

    vpc = _network(self.cidr_block, "cidr_block")
    subnets = [_network(c, "public subnet") for c in self.public_subnet_cidrs]
    subnets += [_network(c, "private subnet") for c in self.private_subnet_cidrs]
    for subnet in subnets:
      if not subnet.subnet_of(vpc):
        raise ConfigurationError(f"Subnet {subnet} is outside of the VPC range {vpc}")
    for i, a in enumerate(subnets):
      for b in subnets[i + 1:]:
        if a.overlaps(b):
          raise ConfigurationError(f"Subnets {a} and {b} overlap")

  @property
  def zone_layout(self) -> List[Dict[str, str]]:
    return [
      {"zone": zone, "public": public, "private": private}
      for zone, public, private in zip(self.availability_zones, self.public_subnet_cidrs, self.private_subnet_cidrs)
    ]

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "NetworkDescriptor":
    data = _known_fields(cls, data)
    for key in ("availability_zones", "public_subnet_cidrs", "private_subnet_cidrs"):
      data[key] = list(data.get(key) or [])
    return _build(cls, data)


@dataclasses.dataclass(frozen=True)
class NodePoolDescriptor:
  name: str
  instance_types: List[str]
  desired_size: int = 2
  min_size: int = 1
  max_size: int = 3
  disk_size: int = 20
  capacity_type: str = "ON_DEMAND"
  labels: Dict[str, str] = dataclasses.field(default_factory=dict)

  def __post_init__(self):
    if not DNS_LABEL.match(self.name):
      raise ConfigurationError(f"Node pool name {self.name!r} must be a lowercase DNS label")
    if not self.instance_types:
      raise ConfigurationError(f"Node pool {self.name!r} needs at least one instance type")
    if not (0 <= self.min_size <= self.desired_size <= self.max_size):
      raise ConfigurationError(
        f"Node pool {self.name!r}: min <= desired <= max must be true "
        f"(got {self.min_size}/{self.desired_size}/{self.max_size})"
      )
    if self.max_size == 0:
      raise ConfigurationError(f"Node pool {self.name!r} has max_size 0")
    if self.capacity_type not in CAPACITY_TYPES:
      raise ConfigurationError(f"Node pool {self.name!r}: capacity_type must be one of {CAPACITY_TYPES}")

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "NodePoolDescriptor":
    data = _known_fields(cls, data)
    if isinstance(data.get("instance_types"), str):
      data["instance_types"] = [data["instance_types"]]
    return _build(cls, data)


@dataclasses.dataclass(frozen=True)
class ClusterDescriptor:
  name: str
  version: str
  node_pools: List[NodePoolDescriptor]
  public_access_cidrs: List[str] = dataclasses.field(default_factory=lambda: ["0.0.0.0/0"])
  admin_principal_arn: Optional[str] = None
  endpoint_private_access: bool = True
  enabled_log_types: List[str] = dataclasses.field(default_factory=lambda: ["api", "audit", "authenticator"])

  def __post_init__(self):
    if not DNS_LABEL.match(self.name):
      raise ConfigurationError(f"Cluster name {self.name!r} must be a lowercase DNS label")
    if not re.match(r"^\d+\.\d+$", str(self.version)):
      raise ConfigurationError(f"Cluster version must look like '1.31', got {self.version!r}")
    if not self.node_pools:
      raise ConfigurationError("At least one node pool must be specified")
    names = [pool.name for pool in self.node_pools]
    if len(set(names)) != len(names):
      raise ConfigurationError(f"Node pool names must be unique: {names}")
    if not self.public_access_cidrs:
      raise ConfigurationError("public_access_cidrs must not be empty")
    for cidr in self.public_access_cidrs:
      _network(cidr, "public_access_cidrs entry")
    unknown_logs = set(self.enabled_log_types) - set(CONTROL_PLANE_LOG_TYPES)
    if unknown_logs:
      raise ConfigurationError(f"Unknown control plane log types: {sorted(unknown_logs)}")

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "ClusterDescriptor":
    data = _known_fields(cls, data)
    data["version"] = str(data.get("version", ""))
    data["node_pools"] = [NodePoolDescriptor.from_dict(p) for p in data.get("node_pools") or []]
    return _build(cls, data)


@dataclasses.dataclass(frozen=True)
class RegistryDescriptor:
  repository_name: str
  namespace: str
  service_account: str
  image_tag_mutability: str = "IMMUTABLE"
  scan_on_push: bool = True
  max_image_count: int = 30
  force_delete: bool = False

  def __post_init__(self):
    if not re.match(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$", self.repository_name):
      raise ConfigurationError(f"Invalid ECR repository name {self.repository_name!r}")
    # The trust condition is an exact string match on these two names
    for what, value in (("namespace", self.namespace), ("service_account", self.service_account)):
      if not DNS_LABEL.match(value):
        raise ConfigurationError(f"{what} {value!r} must be a lowercase DNS label")
    if self.image_tag_mutability not in TAG_MUTABILITY:
      raise ConfigurationError(f"image_tag_mutability must be one of {TAG_MUTABILITY}")
    if self.max_image_count < 1:
      raise ConfigurationError("max_image_count must be at least 1")

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "RegistryDescriptor":
    return _build(cls, _known_fields(cls, data))


@dataclasses.dataclass(frozen=True)
class CiDescriptor:
  github_owner: str
  github_repo: str
  branch: str = "main"
  manage_repository_variables: bool = False

  def __post_init__(self):
    for what, value in (("github_owner", self.github_owner), ("github_repo", self.github_repo)):
      if not value or "/" in value:
        raise ConfigurationError(f"{what} must be a single path segment, got {value!r}")

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "CiDescriptor":
    return _build(cls, _known_fields(cls, data))


@dataclasses.dataclass(frozen=True)
class GitOpsDescriptor:
  repo_url: str
  path: str
  destination_namespace: str
  target_revision: str = "HEAD"
  prune: bool = True
  self_heal: bool = True
  namespace: str = "argocd"
  chart_version: str = "7.7.11"
  application_name: str = "workloads"

  def __post_init__(self):
    if not self.repo_url:
      raise ConfigurationError("gitops repo_url is required")
    for what, value in (("destination_namespace", self.destination_namespace), ("namespace", self.namespace),
                        ("application_name", self.application_name)):
      if not DNS_LABEL.match(value):
        raise ConfigurationError(f"gitops {what} {value!r} must be a lowercase DNS label")

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "GitOpsDescriptor":
    return _build(cls, _known_fields(cls, data))


@dataclasses.dataclass(frozen=True)
class PlatformConfig:
  environment: str
  region: str
  network: NetworkDescriptor
  cluster: ClusterDescriptor
  registry: RegistryDescriptor
  tags: Dict[str, str] = dataclasses.field(default_factory=dict)
  ci: Optional[CiDescriptor] = None
  gitops: Optional[GitOpsDescriptor] = None
  state_bucket_name: Optional[str] = None


def common_tags(environment: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
  tags = {
    "Project": pulumi.get_project(),
    "Environment": environment,
    "ManagedBy": "Pulumi",
  }
  if extra:
    tags.update(extra)
  return tags


def load_platform_config(config: Optional[pulumi.Config] = None, region: Optional[str] = None) -> PlatformConfig:
  """Build the validated platform configuration for the current stack."""
  if config is None:
    config = pulumi.Config(CONFIG_NAMESPACE)
  if region is None:
    region = pulumi.Config("aws").require("region")
  environment = config.get("environment") or pulumi.get_stack()

  ci = config.get_object("ci")
  gitops = config.get_object("gitops")
  platform = PlatformConfig(
    environment=environment,
    region=region,
    network=NetworkDescriptor.from_dict(config.require_object("network")),
    cluster=ClusterDescriptor.from_dict(config.require_object("cluster")),
    registry=RegistryDescriptor.from_dict(config.require_object("registry")),
    tags=common_tags(environment, config.get_object("tags")),
    ci=CiDescriptor.from_dict(ci) if ci else None,
    gitops=GitOpsDescriptor.from_dict(gitops) if gitops else None,
    state_bucket_name=config.get("state-bucket-name"),
  )
  # The trust condition names registry.namespace, so the workload must be synced there
  if platform.gitops and platform.gitops.destination_namespace != platform.registry.namespace:
    raise ConfigurationError(
      f"gitops destination_namespace {platform.gitops.destination_namespace!r} must match "
      f"registry namespace {platform.registry.namespace!r}"
    )

  pulumi.log.info(
    f"platform {environment} ({region}): {len(platform.network.availability_zones)} zone(s), "
    f"cluster {platform.cluster.name} v{platform.cluster.version}, "
    f"{len(platform.cluster.node_pools)} node pool(s), repository {platform.registry.repository_name}"
  )
  return platform
