"""
Terraform configuration compiler — selection model → ``main.tf`` text.

Pure and deterministic: no I/O, no clocks, no randomness.  Identical
inputs always produce byte-identical output, so the rendered text can
be snapshot-tested.

Each provider declares an ordered registry of primitives.  A primitive
knows which other primitives it references, and whether that reference
may instead be satisfied by an existing-resource id from the params.
References are resolved up-front; the text is then rendered by walking
the registry in dependency order (network → gateway → subnet →
security policy → instance → load balancer).

Credentials never reach ``main.tf``.  They are declared as sensitive
variables, referenced as ``var.<name>``, and their values are written
only into the parallel secrets artifact (``secrets.tfvars``).
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Callable

from cloudforge.core.errors import ValidationError
from cloudforge.core.models.credentials import AwsCredentials, AzureCredentials
from cloudforge.core.models.selection import (
    PRIMITIVES,
    DeploymentParams,
    ResourceSelection,
)

logger = logging.getLogger(__name__)

Credentials = AwsCredentials | AzureCredentials

# Secrets shorter than this are not searched for in the rendered text
_MIN_LEAK_CHECK_LEN = 6


# ═══════════════════════════════════════════════════════════════════
#  Result types
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PlannedResource:
    """One Terraform resource the configuration declares."""

    address: str          # aws_vpc.main
    type: str             # ledger vocabulary: vpc, subnet, ec2 …
    name: str             # human name (the Name tag)
    primitive: str        # network, subnet, … ("base" for implicit ones)


@dataclass(frozen=True)
class CompiledConfig:
    """Output of :func:`compile_config`."""

    provider: str
    config_text: str
    secrets_text: str = field(repr=False)
    resources: tuple[PlannedResource, ...] = ()

    def planned(self, address: str) -> PlannedResource | None:
        for res in self.resources:
            if res.address == address:
                return res
        return None


# ═══════════════════════════════════════════════════════════════════
#  HCL helpers
# ═══════════════════════════════════════════════════════════════════


def hcl_string(value: str) -> str:
    """Quote a value as an HCL string literal, escaping template syntax."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
        .replace("${", "$${")
        .replace("%{", "%%{")
    )
    return f'"{escaped}"'


def _hcl_tags(tags: dict[str, str], indent: str = "  ") -> str:
    labels = {k: k if k.isidentifier() else hcl_string(k) for k in tags}
    width = max(len(label) for label in labels.values())
    lines = [f"{indent}tags = {{"]
    for key in sorted(tags):
        lines.append(f"{indent}  {labels[key]:<{width}} = {hcl_string(tags[key])}")
    lines.append(f"{indent}}}")
    return "\n".join(lines)


def _opt(name: str, expr: str | None, width: int) -> str:
    """An optional attribute line (empty when the reference is absent)."""
    if expr is None:
        return ""
    return f"  {name:<{width}} = {expr}\n"


# ═══════════════════════════════════════════════════════════════════
#  Registry types
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Reference:
    """A dependency of one primitive on another.

    ``existing_param`` names the ``DeploymentParams`` field holding an
    id that may satisfy the reference instead of selecting ``target``.
    """

    target: str
    existing_param: str | None
    required: bool
    attr: str = "id"


@dataclass
class RenderContext:
    selection: ResourceSelection
    params: DeploymentParams
    credentials: Credentials
    refs: dict[str, str | None] = field(default_factory=dict)

    def ref(self, target: str) -> str | None:
        return self.refs.get(target)

    def tags(self, name: str) -> dict[str, str]:
        tags = {"ManagedBy": "cloudforge", **self.params.tags}
        tags["Name"] = name
        return tags


Block = tuple[PlannedResource, str]


@dataclass(frozen=True)
class PrimitiveSpec:
    name: str
    address: str
    references: tuple[Reference, ...]
    render: Callable[[RenderContext], list[Block]]


@dataclass(frozen=True)
class SecretVar:
    name: str
    description: str
    value: str
    sensitive: bool = True


@dataclass(frozen=True)
class ProviderTemplate:
    name: str
    header: Callable[[RenderContext], str]
    secrets: Callable[[RenderContext], list[SecretVar]]
    primitives: dict[str, PrimitiveSpec]
    base: Callable[[RenderContext], list[Block]] = lambda ctx: []


# ═══════════════════════════════════════════════════════════════════
#  AWS
# ═══════════════════════════════════════════════════════════════════


_AWS_HEADER = '''# ── CloudForge deployment (aws) ──────────────────────────────────
# Generated by CloudForge. Secrets live in the variables file.

terraform {{
  required_version = ">= 1.6.0"

  required_providers {{
    aws = {{
      source  = "hashicorp/aws"
      version = "~> 5.42"
    }}
  }}
}}

provider "aws" {{
  region     = var.region
  access_key = var.access_key
  secret_key = var.secret_key
{token_line}}}

{variables}'''


def _variable_block(var: SecretVar) -> str:
    lines = [
        f'variable "{var.name}" {{',
        f"  description = {hcl_string(var.description)}",
        "  type        = string",
    ]
    if var.sensitive:
        lines.append("  sensitive   = true")
    lines.append("}")
    return "\n".join(lines) + "\n"


def _aws_secrets(ctx: RenderContext) -> list[SecretVar]:
    creds = ctx.credentials
    assert isinstance(creds, AwsCredentials)
    out = [
        SecretVar("region", "AWS region", creds.region, sensitive=False),
        SecretVar("access_key", "AWS access key", creds.access_key.get_secret_value()),
        SecretVar("secret_key", "AWS secret key", creds.secret_key.get_secret_value()),
    ]
    if creds.token is not None:
        out.append(SecretVar("token", "AWS session token", creds.token.get_secret_value()))
    return out


def _aws_header(ctx: RenderContext) -> str:
    creds = ctx.credentials
    assert isinstance(creds, AwsCredentials)
    token_line = "  token      = var.token\n" if creds.token is not None else ""
    variables = "\n".join(_variable_block(v) for v in _aws_secrets(ctx))
    return _AWS_HEADER.format(token_line=token_line, variables=variables)


def _aws_network(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    text = (
        'resource "aws_vpc" "main" {\n'
        f"  cidr_block           = {hcl_string(p.network_cidr)}\n"
        "  enable_dns_support   = true\n"
        "  enable_dns_hostnames = true\n"
        "\n"
        f"{_hcl_tags(ctx.tags(p.network_name))}\n"
        "}\n"
    )
    return [(PlannedResource("aws_vpc.main", "vpc", p.network_name, "network"), text)]


def _aws_gateway(ctx: RenderContext) -> list[Block]:
    name = f"{ctx.params.network_name}-igw"
    text = (
        'resource "aws_internet_gateway" "main" {\n'
        f"  vpc_id = {ctx.ref('network')}\n"
        "\n"
        f"{_hcl_tags(ctx.tags(name))}\n"
        "}\n"
    )
    return [(PlannedResource("aws_internet_gateway.main", "internet-gateway", name, "gateway"), text)]


def _aws_subnet(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    text = (
        'resource "aws_subnet" "public" {\n'
        f"  vpc_id     = {ctx.ref('network')}\n"
        f"  cidr_block = {hcl_string(p.subnet_cidr)}\n"
        "\n"
        f"{_hcl_tags(ctx.tags(p.subnet_name))}\n"
        "}\n"
    )
    return [(PlannedResource("aws_subnet.public", "subnet", p.subnet_name, "subnet"), text)]


def _aws_ingress(port: int) -> str:
    return (
        "  ingress {\n"
        f"    from_port   = {port}\n"
        f"    to_port     = {port}\n"
        '    protocol    = "tcp"\n'
        '    cidr_blocks = ["0.0.0.0/0"]\n'
        "  }\n"
    )


def _aws_security_policy(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    ingress = "\n".join(_aws_ingress(port) for port in p.ingress_ports)
    text = (
        'resource "aws_security_group" "web" {\n'
        f"  name        = {hcl_string(p.security_policy_name)}\n"
        '  description = "Managed by CloudForge"\n'
        f"  vpc_id      = {ctx.ref('network')}\n"
        "\n"
        f"{ingress}"
        "\n"
        "  egress {\n"
        "    from_port   = 0\n"
        "    to_port     = 0\n"
        '    protocol    = "-1"\n'
        '    cidr_blocks = ["0.0.0.0/0"]\n'
        "  }\n"
        "\n"
        f"{_hcl_tags(ctx.tags(p.security_policy_name))}\n"
        "}\n"
    )
    return [(
        PlannedResource("aws_security_group.web", "security-group", p.security_policy_name,
                        "security_policy"),
        text,
    )]


def _aws_instance(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    sg = ctx.ref("security_policy")
    text = (
        'resource "aws_instance" "web" {\n'
        f"  ami           = {hcl_string(p.image_id)}\n"
        f"  instance_type = {hcl_string(p.instance_type)}\n"
        + _opt("key_name", hcl_string(p.key_pair) if p.key_pair else None, 13)
        + _opt("subnet_id", ctx.ref("subnet"), 13)
        + _opt("vpc_security_group_ids", f"[{sg}]" if sg else None, 22)
        + "\n"
        f"{_hcl_tags(ctx.tags(p.instance_name))}\n"
        "}\n"
    )
    return [(PlannedResource("aws_instance.web", "ec2", p.instance_name, "instance"), text)]


def _aws_load_balancer(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    name = p.load_balancer_name
    blocks: list[Block] = []
    blocks.append((
        PlannedResource("aws_lb.web", "load-balancer", name, "load_balancer"),
        'resource "aws_lb" "web" {\n'
        f"  name               = {hcl_string(name)}\n"
        "  internal           = false\n"
        '  load_balancer_type = "network"\n'
        f"  subnets            = [{ctx.ref('subnet')}]\n"
        "\n"
        f"{_hcl_tags(ctx.tags(name))}\n"
        "}\n",
    ))
    blocks.append((
        PlannedResource("aws_lb_target_group.web", "target-group", f"{name}-tg", "load_balancer"),
        'resource "aws_lb_target_group" "web" {\n'
        f"  name     = {hcl_string(name + '-tg')}\n"
        "  port     = 80\n"
        '  protocol = "TCP"\n'
        f"  vpc_id   = {ctx.ref('network')}\n"
        "}\n",
    ))
    blocks.append((
        PlannedResource("aws_lb_listener.web", "lb-listener", f"{name}-listener", "load_balancer"),
        'resource "aws_lb_listener" "web" {\n'
        "  load_balancer_arn = aws_lb.web.arn\n"
        "  port              = 80\n"
        '  protocol          = "TCP"\n'
        "\n"
        "  default_action {\n"
        '    type             = "forward"\n'
        "    target_group_arn = aws_lb_target_group.web.arn\n"
        "  }\n"
        "}\n",
    ))
    instance = ctx.ref("instance")
    if instance is not None:
        blocks.append((
            PlannedResource("aws_lb_target_group_attachment.web", "lb-attachment",
                            f"{name}-attachment", "load_balancer"),
            'resource "aws_lb_target_group_attachment" "web" {\n'
            "  target_group_arn = aws_lb_target_group.web.arn\n"
            f"  target_id        = {instance}\n"
            "  port             = 80\n"
            "}\n",
        ))
    return blocks


_AWS = ProviderTemplate(
    name="aws",
    header=_aws_header,
    secrets=_aws_secrets,
    primitives={
        "network": PrimitiveSpec("network", "aws_vpc.main", (), _aws_network),
        "gateway": PrimitiveSpec(
            "gateway", "aws_internet_gateway.main",
            (Reference("network", "existing_network_id", required=True),),
            _aws_gateway,
        ),
        "subnet": PrimitiveSpec(
            "subnet", "aws_subnet.public",
            (Reference("network", "existing_network_id", required=True),),
            _aws_subnet,
        ),
        "security_policy": PrimitiveSpec(
            "security_policy", "aws_security_group.web",
            (Reference("network", "existing_network_id", required=True),),
            _aws_security_policy,
        ),
        "instance": PrimitiveSpec(
            "instance", "aws_instance.web",
            (
                Reference("subnet", "existing_subnet_id", required=False),
                Reference("security_policy", "existing_security_policy_id", required=False),
            ),
            _aws_instance,
        ),
        "load_balancer": PrimitiveSpec(
            "load_balancer", "aws_lb.web",
            (
                Reference("network", "existing_network_id", required=True),
                Reference("subnet", "existing_subnet_id", required=True),
                Reference("instance", None, required=False),
            ),
            _aws_load_balancer,
        ),
    },
)


# ═══════════════════════════════════════════════════════════════════
#  Azure
# ═══════════════════════════════════════════════════════════════════


_AZURE_HEADER = '''# ── CloudForge deployment (azure) ────────────────────────────────
# Generated by CloudForge. Secrets live in the variables file.

terraform {{
  required_version = ">= 1.6.0"

  required_providers {{
    azurerm = {{
      source  = "hashicorp/azurerm"
      version = "~> 3.0"
    }}
  }}
}}

provider "azurerm" {{
  features {{}}

  subscription_id = var.subscription_id
  client_id       = var.client_id
  client_secret   = var.client_secret
  tenant_id       = var.tenant_id
}}

{variables}'''

_AZ_RG = "azurerm_resource_group.main"


def _azure_secrets(ctx: RenderContext) -> list[SecretVar]:
    creds = ctx.credentials
    assert isinstance(creds, AzureCredentials)
    out = [
        SecretVar("location", "Azure location", creds.location, sensitive=False),
        SecretVar("subscription_id", "Azure subscription id",
                  creds.subscription_id.get_secret_value()),
        SecretVar("client_id", "Azure client id", creds.client_id.get_secret_value()),
        SecretVar("client_secret", "Azure client secret", creds.client_secret.get_secret_value()),
        SecretVar("tenant_id", "Azure tenant id", creds.tenant_id.get_secret_value()),
    ]
    if ctx.selection.instance and ctx.params.admin_password is not None:
        out.append(SecretVar("admin_password", "VM administrator password",
                             ctx.params.admin_password.get_secret_value()))
    return out


def _azure_header(ctx: RenderContext) -> str:
    variables = "\n".join(_variable_block(v) for v in _azure_secrets(ctx))
    return _AZURE_HEADER.format(variables=variables)


def _azure_base(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    text = (
        'resource "azurerm_resource_group" "main" {\n'
        f"  name     = {hcl_string(p.resource_group)}\n"
        "  location = var.location\n"
        "\n"
        f"{_hcl_tags(ctx.tags(p.resource_group))}\n"
        "}\n"
    )
    return [(PlannedResource(_AZ_RG, "resource-group", p.resource_group, "base"), text)]


def _azure_network(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    text = (
        'resource "azurerm_virtual_network" "main" {\n'
        f"  name                = {hcl_string(p.network_name)}\n"
        f"  address_space       = [{hcl_string(p.network_cidr)}]\n"
        f"  location            = {_AZ_RG}.location\n"
        f"  resource_group_name = {_AZ_RG}.name\n"
        "\n"
        f"{_hcl_tags(ctx.tags(p.network_name))}\n"
        "}\n"
    )
    return [(PlannedResource("azurerm_virtual_network.main", "vnet", p.network_name, "network"), text)]


def _azure_subnet(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    # An existing vnet lives in its own, already existing resource group
    if ctx.selection.network or p.existing_resource_group is None:
        group = f"{_AZ_RG}.name"
    else:
        group = hcl_string(p.existing_resource_group)
    text = (
        'resource "azurerm_subnet" "main" {\n'
        f"  name                 = {hcl_string(p.subnet_name)}\n"
        f"  resource_group_name  = {group}\n"
        f"  virtual_network_name = {ctx.ref('network')}\n"
        f"  address_prefixes     = [{hcl_string(p.subnet_cidr)}]\n"
        "}\n"
    )
    return [(PlannedResource("azurerm_subnet.main", "subnet", p.subnet_name, "subnet"), text)]


def _azure_rule(index: int, port: int) -> str:
    return (
        "  security_rule {\n"
        f'    name                       = "allow-{port}"\n'
        f"    priority                   = {100 + index * 10}\n"
        '    direction                  = "Inbound"\n'
        '    access                     = "Allow"\n'
        '    protocol                   = "Tcp"\n'
        '    source_port_range          = "*"\n'
        f'    destination_port_range     = "{port}"\n'
        '    source_address_prefix      = "*"\n'
        '    destination_address_prefix = "*"\n'
        "  }\n"
    )


def _azure_security_policy(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    rules = "\n".join(_azure_rule(i, port) for i, port in enumerate(p.ingress_ports))
    text = (
        'resource "azurerm_network_security_group" "web" {\n'
        f"  name                = {hcl_string(p.security_policy_name)}\n"
        f"  location            = {_AZ_RG}.location\n"
        f"  resource_group_name = {_AZ_RG}.name\n"
        "\n"
        f"{rules}"
        "\n"
        f"{_hcl_tags(ctx.tags(p.security_policy_name))}\n"
        "}\n"
    )
    return [(
        PlannedResource("azurerm_network_security_group.web", "security-group",
                        p.security_policy_name, "security_policy"),
        text,
    )]


def _azure_instance(ctx: RenderContext) -> list[Block]:
    p = ctx.params
    nic_name = f"{p.instance_name}-nic"
    blocks: list[Block] = [(
        PlannedResource("azurerm_network_interface.web", "network-interface", nic_name, "instance"),
        'resource "azurerm_network_interface" "web" {\n'
        f"  name                = {hcl_string(nic_name)}\n"
        f"  location            = {_AZ_RG}.location\n"
        f"  resource_group_name = {_AZ_RG}.name\n"
        "\n"
        "  ip_configuration {\n"
        '    name                          = "internal"\n'
        f"    subnet_id                     = {ctx.ref('subnet')}\n"
        '    private_ip_address_allocation = "Dynamic"\n'
        "  }\n"
        "}\n",
    )]
    nsg = ctx.ref("security_policy")
    if nsg is not None:
        blocks.append((
            PlannedResource("azurerm_network_interface_security_group_association.web",
                            "nsg-association", f"{nic_name}-nsg", "instance"),
            'resource "azurerm_network_interface_security_group_association" "web" {\n'
            "  network_interface_id      = azurerm_network_interface.web.id\n"
            f"  network_security_group_id = {nsg}\n"
            "}\n",
        ))
    blocks.append((
        PlannedResource("azurerm_linux_virtual_machine.web", "vm", p.instance_name, "instance"),
        'resource "azurerm_linux_virtual_machine" "web" {\n'
        f"  name                            = {hcl_string(p.instance_name)}\n"
        f"  resource_group_name             = {_AZ_RG}.name\n"
        f"  location                        = {_AZ_RG}.location\n"
        f"  size                            = {hcl_string(p.vm_size)}\n"
        f"  admin_username                  = {hcl_string(p.admin_username)}\n"
        "  admin_password                  = var.admin_password\n"
        "  disable_password_authentication = false\n"
        "  network_interface_ids           = [azurerm_network_interface.web.id]\n"
        "\n"
        "  os_disk {\n"
        '    caching              = "ReadWrite"\n'
        '    storage_account_type = "Standard_LRS"\n'
        "  }\n"
        "\n"
        "  source_image_reference {\n"
        '    publisher = "Canonical"\n'
        '    offer     = "0001-com-ubuntu-server-jammy"\n'
        '    sku       = "22_04-lts"\n'
        '    version   = "latest"\n'
        "  }\n"
        "\n"
        f"{_hcl_tags(ctx.tags(p.instance_name))}\n"
        "}\n",
    ))
    return blocks


def _azure_load_balancer(ctx: RenderContext) -> list[Block]:
    name = ctx.params.load_balancer_name
    return [
        (
            PlannedResource("azurerm_public_ip.lb", "public-ip", f"{name}-ip", "load_balancer"),
            'resource "azurerm_public_ip" "lb" {\n'
            f"  name                = {hcl_string(name + '-ip')}\n"
            f"  location            = {_AZ_RG}.location\n"
            f"  resource_group_name = {_AZ_RG}.name\n"
            '  allocation_method   = "Static"\n'
            '  sku                 = "Standard"\n'
            "}\n",
        ),
        (
            PlannedResource("azurerm_lb.web", "load-balancer", name, "load_balancer"),
            'resource "azurerm_lb" "web" {\n'
            f"  name                = {hcl_string(name)}\n"
            f"  location            = {_AZ_RG}.location\n"
            f"  resource_group_name = {_AZ_RG}.name\n"
            '  sku                 = "Standard"\n'
            "\n"
            "  frontend_ip_configuration {\n"
            '    name                 = "public"\n'
            "    public_ip_address_id = azurerm_public_ip.lb.id\n"
            "  }\n"
            "\n"
            f"{_hcl_tags(ctx.tags(name))}\n"
            "}\n",
        ),
    ]


_AZURE = ProviderTemplate(
    name="azure",
    header=_azure_header,
    secrets=_azure_secrets,
    base=_azure_base,
    primitives={
        "network": PrimitiveSpec("network", "azurerm_virtual_network.main", (), _azure_network),
        "subnet": PrimitiveSpec(
            "subnet", "azurerm_subnet.main",
            (Reference("network", "existing_network_id", required=True, attr="name"),),
            _azure_subnet,
        ),
        "security_policy": PrimitiveSpec(
            "security_policy", "azurerm_network_security_group.web", (), _azure_security_policy,
        ),
        "instance": PrimitiveSpec(
            "instance", "azurerm_linux_virtual_machine.web",
            (
                Reference("subnet", "existing_subnet_id", required=True),
                Reference("security_policy", "existing_security_policy_id", required=False),
            ),
            _azure_instance,
        ),
        "load_balancer": PrimitiveSpec(
            "load_balancer", "azurerm_lb.web", (), _azure_load_balancer,
        ),
    },
)


PROVIDERS: dict[str, ProviderTemplate] = {"aws": _AWS, "azure": _AZURE}


# ═══════════════════════════════════════════════════════════════════
#  Compilation
# ═══════════════════════════════════════════════════════════════════


def _resolve_references(
    template: ProviderTemplate,
    selection: ResourceSelection,
    params: DeploymentParams,
) -> tuple[dict[str, str | None], list[str]]:
    """Resolve every reference of every selected primitive.

    Returns:
        (refs, problems) — ``refs`` maps a target primitive to the HCL
        expression that points at it, or None when optional and absent.
    """
    refs: dict[str, str | None] = {}
    problems: list[str] = []

    for name in selection.selected():
        spec = template.primitives.get(name)
        if spec is None:
            problems.append(f"{name} is not supported by provider '{template.name}'")
            continue

        for ref in spec.references:
            target_selected = getattr(selection, ref.target)
            existing = getattr(params, ref.existing_param) if ref.existing_param else None
            target_spec = template.primitives.get(ref.target)

            if target_selected and existing:
                problems.append(
                    f"{name} → {ref.target} is ambiguous: {ref.target} is selected "
                    f"and {ref.existing_param}={existing!r} is also given"
                )
                continue
            if target_selected and target_spec is not None:
                expr = f"{target_spec.address}.{ref.attr}"
            elif existing:
                expr = hcl_string(existing)
            elif ref.required:
                hint = f" or set {ref.existing_param}" if ref.existing_param else ""
                problems.append(f"{name} requires {ref.target}: select it{hint}")
                continue
            else:
                expr = None

            prior = refs.get(ref.target)
            if prior is not None and expr is not None and prior != expr:
                problems.append(f"conflicting references to {ref.target}")
                continue
            if expr is not None or ref.target not in refs:
                refs[ref.target] = expr

    return refs, problems


def _check_params(
    provider: str,
    selection: ResourceSelection,
    params: DeploymentParams,
) -> list[str]:
    problems: list[str] = []
    if selection.network and selection.subnet:
        net = ipaddress.IPv4Network(params.network_cidr)
        sub = ipaddress.IPv4Network(params.subnet_cidr)
        if not sub.subnet_of(net):
            problems.append(
                f"subnet_cidr {params.subnet_cidr} is not inside network_cidr {params.network_cidr}"
            )
    if provider == "azure" and selection.instance and params.admin_password is None:
        problems.append("instance on azure requires admin_password")
    if (
        provider == "azure" and selection.subnet and not selection.network
        and params.existing_network_id and params.existing_resource_group is None
    ):
        problems.append("existing_network_id on azure requires existing_resource_group")
    return problems


def render_secrets(variables: list[SecretVar]) -> str:
    """Render the ``.tfvars`` secrets artifact."""
    width = max((len(v.name) for v in variables), default=0)
    lines = ["# CloudForge secrets: never commit this file"]
    for var in variables:
        lines.append(f"{var.name:<{width}} = {hcl_string(var.value)}")
    return "\n".join(lines) + "\n"


def compile_config(
    provider: str,
    selection: ResourceSelection,
    params: DeploymentParams,
    credentials: Credentials,
) -> CompiledConfig:
    """Compile a selection into Terraform configuration + secrets text.

    Args:
        provider: ``aws`` or ``azure``.
        selection: Which primitives to render.
        params: Values for the selected primitives.
        credentials: Provider credentials; emitted only into the secrets text.

    Returns:
        CompiledConfig with ``config_text``, ``secrets_text`` and the
        ordered manifest of planned resources.

    Raises:
        ValidationError: Unknown provider, empty selection, unsupported
            primitive, missing/ambiguous reference, or bad parameters.
    """
    template = PROVIDERS.get(provider)
    if template is None:
        raise ValidationError(
            f"Unknown provider: {provider}. Available: {', '.join(PROVIDERS)}"
        )
    if credentials.provider != provider:
        raise ValidationError(
            f"Credentials are for '{credentials.provider}', not '{provider}'"
        )
    if selection.is_empty:
        raise ValidationError("No resources selected")

    refs, problems = _resolve_references(template, selection, params)
    problems.extend(_check_params(provider, selection, params))
    if problems:
        raise ValidationError("; ".join(problems), problems=problems)

    ctx = RenderContext(selection=selection, params=params, credentials=credentials, refs=refs)

    blocks: list[Block] = list(template.base(ctx))
    for name in PRIMITIVES:
        if getattr(selection, name):
            blocks.extend(template.primitives[name].render(ctx))

    body = "\n".join(text for _, text in blocks)
    section = "# ── Resources " + "─" * 51 + "\n\n"
    config_text = template.header(ctx) + "\n" + section + body

    secrets = template.secrets(ctx)
    for var in secrets:
        if var.sensitive and len(var.value) >= _MIN_LEAK_CHECK_LEN and var.value in config_text:
            raise ValidationError(
                f"A parameter contains the value of secret '{var.name}'; "
                "credentials may not appear in the configuration"
            )

    compiled = CompiledConfig(
        provider=provider,
        config_text=config_text,
        secrets_text=render_secrets(secrets),
        resources=tuple(res for res, _ in blocks),
    )
    logger.debug(
        "Compiled %s config: %d resources (%s)",
        provider, len(compiled.resources), ", ".join(selection.selected()),
    )
    return compiled
