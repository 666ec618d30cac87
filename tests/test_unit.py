import pytest

from infraplan.engine import (
    DuplicateIdentifier,
    Lifecycle,
    Reference,
    Unit,
    UnitRegistry,
    UnitTemplate,
    UnitVariant,
    ref,
)


def test_registry_rejects_duplicate_identifier():
    registry = UnitRegistry()
    registry.define_unit("aws_vpc.main", {"cidr_block": "10.0.0.0/16"})

    with pytest.raises(DuplicateIdentifier) as exc_info:
        registry.define_unit("aws_vpc.main", {"cidr_block": "10.1.0.0/16"})

    assert exc_info.value.unit_id == "aws_vpc.main"
    assert len(registry) == 1
    assert registry.get("aws_vpc.main").inputs["cidr_block"] == "10.0.0.0/16"


def test_registry_keeps_declaration_order():
    registry = UnitRegistry()
    for name in ("c", "a", "b"):
        registry.define_unit(f"aws_s3_bucket.{name}")

    assert [u.unit_id for u in registry] == ["aws_s3_bucket.c", "aws_s3_bucket.a", "aws_s3_bucket.b"]
    assert "aws_s3_bucket.a" in registry
    assert "aws_s3_bucket.z" not in registry


def test_unit_type_strips_name_and_module_prefix():
    assert Unit("aws_vpc.main").unit_type == "aws_vpc"
    assert Unit("module.net.aws_subnet.public").unit_type == "aws_subnet"
    assert Unit("standalone").unit_type == "standalone"


def test_unit_requires_identifier():
    with pytest.raises(ValueError):
        Unit("")


def test_lifecycle_coerces_attribute_sets():
    lifecycle = Lifecycle(force_new=["ami", "ami"], ignore_changes=("tags",))

    assert lifecycle.force_new == frozenset({"ami"})
    assert lifecycle.ignore_changes == frozenset({"tags"})
    assert not lifecycle.create_before_destroy


def test_reference_string_form():
    assert str(ref("aws_subnet.a", "id")) == "aws_subnet.a.id"
    assert str(ref("aws_vpc.main", "azs", 1)) == "aws_vpc.main.azs[1]"
    assert ref("aws_vpc.main", "id") == Reference("aws_vpc.main", "id")


def test_template_selects_variant_over_shared_inputs():
    template = UnitTemplate(
        unit_id="aws_instance.web",
        inputs={"instance_type": "t3.micro", "ami": "ami-base"},
        variants={
            "true": UnitVariant(inputs={"ami": "ami-hardened"}, depends_on=frozenset({"aws_kms_key.k"})),
            "false": UnitVariant(),
        },
    )

    hardened = template.select("true")
    stock = template.select("false")

    assert hardened.inputs == {"instance_type": "t3.micro", "ami": "ami-hardened"}
    assert hardened.depends_on == frozenset({"aws_kms_key.k"})
    assert stock.inputs["ami"] == "ami-base"
    assert stock.depends_on == frozenset()


def test_template_unknown_variant():
    template = UnitTemplate(unit_id="aws_instance.web", variants={"a": UnitVariant()})

    with pytest.raises(KeyError):
        template.select("b")
