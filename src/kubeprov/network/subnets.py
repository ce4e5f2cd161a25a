"""Subnet selection for cluster placement."""

from typing import Any

from kubeprov.clients.aws_client import AWSClient
from kubeprov.core.exceptions import ConfigurationError
from kubeprov.core.models import SubnetSelection, SubnetType
from kubeprov.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ROUTE_CIDRS = ("0.0.0.0/0", "::/0")


def _default_route_target(route_table: dict[str, Any]) -> SubnetType:
    """Classify a route table by where its default route goes."""
    for route in route_table.get("Routes", []):
        destination = route.get("DestinationCidrBlock") or route.get("DestinationIpv6CidrBlock")
        if destination not in DEFAULT_ROUTE_CIDRS:
            continue
        if route.get("State") == "blackhole":
            continue

        gateway = route.get("GatewayId", "") or ""
        if gateway.startswith("igw-"):
            return SubnetType.PUBLIC
        if (
            route.get("NatGatewayId")
            or route.get("InstanceId")
            or route.get("TransitGatewayId")
            or route.get("EgressOnlyInternetGatewayId")
        ):
            return SubnetType.PRIVATE

    return SubnetType.ISOLATED


def classify_subnets(
    subnets: list[dict[str, Any]], route_tables: list[dict[str, Any]]
) -> dict[str, SubnetType]:
    """Classify each subnet as public, private or isolated.

    A subnet uses its explicitly associated route table, falling back to the
    VPC's main route table.

    Args:
        subnets: EC2 DescribeSubnets entries
        route_tables: EC2 DescribeRouteTables entries for the same VPC

    Returns:
        Mapping of subnet id to SubnetType
    """
    explicit: dict[str, dict[str, Any]] = {}
    main_table: dict[str, Any] | None = None

    for table in route_tables:
        for association in table.get("Associations", []):
            if association.get("Main"):
                main_table = table
            elif association.get("SubnetId"):
                explicit[association["SubnetId"]] = table

    classification: dict[str, SubnetType] = {}
    for subnet in subnets:
        subnet_id = subnet["SubnetId"]
        table = explicit.get(subnet_id, main_table)
        classification[subnet_id] = (
            _default_route_target(table) if table is not None else SubnetType.ISOLATED
        )

    return classification


class SubnetResolver:
    """Applies a SubnetSelection to a VPC."""

    def __init__(self, aws_client: AWSClient):
        """Initialize resolver.

        Args:
            aws_client: AWS client used for EC2 lookups
        """
        self.aws = aws_client

    def select_subnets(self, vpc_id: str, selection: SubnetSelection) -> list[str]:
        """Pick the subnets for a cluster.

        Args:
            vpc_id: VPC id
            selection: Selection rule

        Returns:
            Sorted list of subnet ids

        Raises:
            ConfigurationError: If no subnet matches, or explicit ids are not in the VPC
        """
        subnets = self.aws.describe_subnets(vpc_id)
        if not subnets:
            raise ConfigurationError(f"VPC {vpc_id} has no subnets (or does not exist)")

        if selection.subnet_ids:
            known = {s["SubnetId"] for s in subnets}
            unknown = sorted(set(selection.subnet_ids) - known)
            if unknown:
                raise ConfigurationError(
                    f"Subnets not found in {vpc_id}: {', '.join(unknown)}"
                )
            chosen = [s for s in subnets if s["SubnetId"] in selection.subnet_ids]
        else:
            route_tables = self.aws.describe_route_tables(vpc_id)
            classification = classify_subnets(subnets, route_tables)
            chosen = [
                s for s in subnets if classification[s["SubnetId"]] == selection.subnet_type
            ]

        if selection.one_per_az:
            by_az: dict[str, dict[str, Any]] = {}
            for subnet in sorted(chosen, key=lambda s: s["SubnetId"]):
                by_az.setdefault(subnet.get("AvailabilityZone", subnet["SubnetId"]), subnet)
            chosen = list(by_az.values())

        subnet_ids = sorted(s["SubnetId"] for s in chosen)
        if not subnet_ids:
            raise ConfigurationError(
                f"No {selection.subnet_type.value} subnets found in {vpc_id}"
            )

        logger.info(
            "subnets_selected",
            vpc_id=vpc_id,
            subnet_type=selection.subnet_type.value,
            subnet_ids=subnet_ids,
        )
        return subnet_ids
