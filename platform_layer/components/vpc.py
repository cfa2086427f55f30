import pulumi
import pulumi_awsx as awsx
from typing import List, Optional

from platform_layer.config import NetworkDescriptor

NAT_GATEWAY_STRATEGIES = {
  "single": awsx.ec2.NatGatewayStrategy.SINGLE,         # Cheapest, but one zone failure takes egress down
  "one-per-az": awsx.ec2.NatGatewayStrategy.ONE_PER_AZ, # Production setting
}


def cluster_discovery_tag(cluster_name: str) -> dict:
  # EKS needs this tag to discover the VPC and its subnets
  return {f"kubernetes.io/cluster/{cluster_name}": "shared"}


def subnet_specs(network: NetworkDescriptor, cluster_name: str, tags: Optional[dict] = None) -> List[awsx.ec2.SubnetSpecArgs]:
  # Zone i gets public block i and private block i; NetworkDescriptor already
  # guaranteed the three lists are the same length
  tags = {**cluster_discovery_tag(cluster_name), **(tags or {})}
  return [
    awsx.ec2.SubnetSpecArgs(
      type=awsx.ec2.SubnetType.PUBLIC,   # Has IGW, hosts NAT gateway
      name="public",
      cidr_blocks=list(network.public_subnet_cidrs),
      tags={
        "kubernetes.io/role/elb": "1",   # For internet-facing LBs
        **tags,
      }
    ),
    awsx.ec2.SubnetSpecArgs(
      type=awsx.ec2.SubnetType.PRIVATE,  # No IGW, uses NAT for internet
      name="private",
      cidr_blocks=list(network.private_subnet_cidrs),
      tags={
        "kubernetes.io/role/internal-elb": "1",  # For internal LBs
        **tags,
      }
    ),
  ]


def create_vpc(network: NetworkDescriptor, cluster_name: str, tags: Optional[dict] = None) -> awsx.ec2.Vpc:
  if tags is None:
    tags = {}

  vpc = awsx.ec2.Vpc(f"{cluster_name}-vpc",
          cidr_block=network.cidr_block,
          availability_zone_names=network.availability_zones,
          enable_dns_hostnames=network.enable_dns_hostnames,  # Required for EKS node registration
          enable_dns_support=True,
          subnet_strategy=awsx.ec2.SubnetAllocationStrategy.EXACT,
          subnet_specs=subnet_specs(network, cluster_name, tags),
          nat_gateways=awsx.ec2.NatGatewayConfigurationArgs(
            strategy=NAT_GATEWAY_STRATEGIES[network.nat_strategy]
          ),
          tags={
            "Name": f"{cluster_name}-vpc",
            **cluster_discovery_tag(cluster_name),
            **tags,
          }
  )

  for zone in network.zone_layout:
    pulumi.log.info(f"network: {zone['zone']} public={zone['public']} private={zone['private']}")

  pulumi.export("vpc_id", vpc.vpc_id)
  pulumi.export("public_subnet_ids", vpc.public_subnet_ids)
  pulumi.export("private_subnet_ids", vpc.private_subnet_ids)

  return vpc
