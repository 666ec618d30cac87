"""
The small VPC topology used across planner and executor tests.

    aws_vpc.main
    ├── aws_subnet.a  (force_new: cidr_block)
    │   └── aws_instance.web
    └── aws_internet_gateway.gw
"""

from infraplan.engine import Lifecycle, UnitRegistry, ref

VPC = "aws_vpc.main"
SUBNET = "aws_subnet.a"
GATEWAY = "aws_internet_gateway.gw"
INSTANCE = "aws_instance.web"


def build_topology(
    include_gateway=True,
    subnet_cidr="10.0.1.0/24",
    ami="ami-123",
    subnet_lifecycle=None,
    instance_lifecycle=None,
):
    registry = UnitRegistry()
    registry.define_unit(VPC, {"cidr_block": "10.0.0.0/16"})
    registry.define_unit(
        SUBNET,
        {"vpc_id": ref(VPC, "id"), "cidr_block": subnet_cidr},
        lifecycle=subnet_lifecycle or Lifecycle(force_new={"cidr_block"}),
    )
    if include_gateway:
        registry.define_unit(GATEWAY, {"vpc_id": ref(VPC, "id")})
    registry.define_unit(
        INSTANCE,
        {"subnet_id": ref(SUBNET, "id"), "ami": ami, "tags": {"Name": "web"}},
        lifecycle=instance_lifecycle,
    )
    return registry.units
