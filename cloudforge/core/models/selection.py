"""
Resource selection — what the caller wants Terraform to create.

``ResourceSelection`` holds one flag per infrastructure primitive and
``DeploymentParams`` holds the free-form values those primitives are
rendered with.  Both accept the camelCase names the dashboard form
posts (``vpc``, ``securityGroup``, ``vpcCidr``, ``existingVpcId`` …)
as aliases of the canonical snake_case fields.
"""

from __future__ import annotations

import ipaddress
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from cloudforge.core.errors import ValidationError

# Canonical dependency order.  The compiler walks primitives in this
# order regardless of how the caller listed them.
PRIMITIVES: tuple[str, ...] = (
    "network",
    "gateway",
    "subnet",
    "security_policy",
    "instance",
    "load_balancer",
)


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ResourceSelection(BaseModel):
    """Which primitives to render."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    network: bool = Field(False, validation_alias=_alias("network", "vpc"))
    gateway: bool = Field(
        False, validation_alias=_alias("gateway", "internetGateway", "internet_gateway"),
    )
    subnet: bool = Field(False, validation_alias=_alias("subnet"))
    security_policy: bool = Field(
        False, validation_alias=_alias("security_policy", "securityGroup", "security_group"),
    )
    instance: bool = Field(False, validation_alias=_alias("instance", "ec2", "vm"))
    load_balancer: bool = Field(
        False, validation_alias=_alias("load_balancer", "loadBalancer"),
    )

    def selected(self) -> list[str]:
        """Selected primitive names, in dependency order."""
        return [name for name in PRIMITIVES if getattr(self, name)]

    @property
    def is_empty(self) -> bool:
        return not self.selected()

    @classmethod
    def from_payload(cls, data: Any) -> ResourceSelection:
        """Build from a request body, raising our ``ValidationError``."""
        if data is None:
            data = {}
        if isinstance(data, (list, tuple, set)):
            # ["vpc", "security-group"] or [{"type": "vpc", ...}, ...]
            names = [item.get("type", "") if isinstance(item, dict) else str(item) for item in data]
            data = {name.replace("-", "_"): True for name in names}
        if isinstance(data, dict):
            known = cls.known_names()
            unknown = sorted(str(key) for key, value in data.items() if value and key not in known)
            if unknown:
                problems = [f"resources.{name}: unknown resource type" for name in unknown]
                raise ValidationError(
                    "Invalid resources: " + "; ".join(problems), problems=problems,
                )
        return _validate(cls, data, "resources")

    @classmethod
    def known_names(cls) -> set[str]:
        """Canonical primitive names plus every accepted alias."""
        names: set[str] = set()
        for field_name, info in cls.model_fields.items():
            names.add(field_name)
            if isinstance(info.validation_alias, AliasChoices):
                names.update(c for c in info.validation_alias.choices if isinstance(c, str))
        return names


class DeploymentParams(BaseModel):
    """Free-form values for the selected primitives."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    # ── Network / subnet ─────────────────────────────────────────
    network_name: str = Field("vpc-main", validation_alias=_alias("network_name", "vpcName"))
    network_cidr: str = Field("10.0.0.0/16", validation_alias=_alias("network_cidr", "vpcCidr"))
    subnet_name: str = Field("subnet-public", validation_alias=_alias("subnet_name", "subnetName"))
    subnet_cidr: str = Field("10.0.1.0/24", validation_alias=_alias("subnet_cidr", "subnetCidr"))

    # ── Security policy ──────────────────────────────────────────
    security_policy_name: str = Field(
        "web-sg", validation_alias=_alias("security_policy_name", "sgName"),
    )
    ingress_ports: list[int] = Field(
        default_factory=lambda: [22, 80],
        validation_alias=_alias("ingress_ports", "ingressPorts"),
    )

    # ── Compute ──────────────────────────────────────────────────
    instance_name: str = Field("web-server", validation_alias=_alias("instance_name", "instanceName"))
    instance_type: str = Field("t2.micro", validation_alias=_alias("instance_type", "instanceType"))
    image_id: str = Field(
        "ami-0c02fb55956c7d316", validation_alias=_alias("image_id", "ami", "imageId"),
    )
    key_pair: str | None = Field(None, validation_alias=_alias("key_pair", "keyPair"))

    # ── Load balancer ────────────────────────────────────────────
    load_balancer_name: str = Field(
        "web-lb", validation_alias=_alias("load_balancer_name", "lbName", "loadBalancerName"),
    )

    # ── Existing resources (instead of creating them) ────────────
    existing_network_id: str | None = Field(
        None, validation_alias=_alias("existing_network_id", "existingVpcId"),
    )
    existing_subnet_id: str | None = Field(
        None, validation_alias=_alias("existing_subnet_id", "existingSubnetId"),
    )
    existing_security_policy_id: str | None = Field(
        None,
        validation_alias=_alias("existing_security_policy_id", "existingSecurityGroupId"),
    )

    # ── Azure ────────────────────────────────────────────────────
    resource_group: str = Field(
        "rg-cloudforge", validation_alias=_alias("resource_group", "resourceGroup"),
    )
    existing_resource_group: str | None = Field(
        None, validation_alias=_alias("existing_resource_group", "existingResourceGroup"),
    )
    vm_size: str = Field("Standard_B1s", validation_alias=_alias("vm_size", "vmSize"))
    admin_username: str = Field(
        "azureuser", validation_alias=_alias("admin_username", "adminUsername"),
    )
    admin_password: SecretStr | None = Field(
        None, validation_alias=_alias("admin_password", "adminPassword"),
    )

    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator(
        "existing_network_id", "existing_subnet_id", "existing_security_policy_id",
        "existing_resource_group", "key_pair", mode="before",
    )
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        # The form posts "" for untouched inputs
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("admin_password", mode="before")
    @classmethod
    def _blank_password(cls, value: Any) -> Any:
        if isinstance(value, str) and not value:
            return None
        return value

    @field_validator("network_cidr", "subnet_cidr")
    @classmethod
    def _check_cidr(cls, value: str) -> str:
        try:
            return str(ipaddress.IPv4Network(value.strip(), strict=True))
        except ValueError as e:
            raise ValueError(f"invalid IPv4 CIDR block {value!r}: {e}") from e

    @field_validator(
        "network_name", "subnet_name", "security_policy_name", "instance_name",
        "instance_type", "image_id", "load_balancer_name", "resource_group",
        "vm_size", "admin_username",
    )
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        if any(ch in value for ch in "\r\n"):
            raise ValueError("must be a single line")
        return value

    @field_validator("ingress_ports")
    @classmethod
    def _check_ports(cls, value: list[int]) -> list[int]:
        for port in value:
            if not 1 <= port <= 65535:
                raise ValueError(f"port {port} out of range 1-65535")
        return sorted(set(value))

    @classmethod
    def from_payload(cls, data: Any) -> DeploymentParams:
        """Build from a request body, raising our ``ValidationError``."""
        return _validate(cls, data or {}, "config")


def _validate(model: type[BaseModel], data: Any, label: str) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        problems = [
            f"{label}.{'.'.join(str(p) for p in err['loc']) or '?'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {label}: " + "; ".join(problems), problems=problems,
        ) from e
