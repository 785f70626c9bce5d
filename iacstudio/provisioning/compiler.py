"""
Graph compiler: resource graph + cloud config -> Terraform source.

The set of supported resource types is closed. Each type has one compiler
class below; RESOURCE_COMPILERS is built from them at import time and is
read-only, so the catalog can only change with the code.

Nodes are compiled in input order. Edges are not consulted: references
between resources come from node properties (e.g. an instance's
``security_group`` names the security group node's id).

Usage:
    from iacstudio.provisioning.compiler import GraphCompiler

    code = GraphCompiler().compile(graph, CloudConfig(provider="aws", region="us-east-1"))
    code.files()  # {"main.tf": ..., "variables.tf": ..., "outputs.tf": ..., "provider.tf": ...}
"""

import json
import logging
import re
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Type

from iacstudio.errors import CompileError, EngineError, UnsupportedResourceType, ValidationError
from iacstudio.provisioning.types import CloudConfig, CompiledCode, Graph, Node

logger = logging.getLogger(__name__)

# Terraform block labels and references: letter/underscore, then word chars or dashes
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


# =============================================================================
# HCL rendering helpers
# =============================================================================

def hcl_string(value: Any) -> str:
    """Render a value as a quoted HCL string literal with interpolation escaped."""
    if isinstance(value, bool):
        value = "true" if value else "false"
    literal = json.dumps(str(value))
    return literal.replace("${", "$${").replace("%{", "%%{")


def hcl_number(value: Any) -> str:
    """Render a number; numeric strings are accepted, anything else is quoted."""
    if isinstance(value, bool):
        return hcl_string(value)
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).strip()
    if re.fullmatch(r"-?\d+(\.\d+)?", text):
        return text
    return hcl_string(value)


def hcl_bool(value: Any) -> str:
    if isinstance(value, str):
        return "true" if value.strip().lower() in ("true", "1", "yes") else "false"
    return "true" if value else "false"


def hcl_string_list(value: Any) -> str:
    """Render a string or list of strings as an HCL list of string literals."""
    items = value if isinstance(value, (list, tuple)) else [value]
    return "[" + ", ".join(hcl_string(item) for item in items) + "]"


def _reference(node: Node, field: str) -> str:
    """Return a property naming another node, checked as a Terraform identifier."""
    value = node.properties[field]
    if not _IDENTIFIER_RE.match(value):
        raise CompileError(f"invalid reference in {field}: {value!r}")
    return value


# =============================================================================
# Resource compilers
# =============================================================================

class ResourceCompiler:
    """
    Base for one resource type.

    Subclasses set ``resource_type`` and ``required_fields`` and implement
    ``render``; validation is required-field presence.
    """

    resource_type: str = ""
    required_fields: Tuple[str, ...] = ()

    def validate(self, node: Node) -> None:
        for field in self.required_fields:
            if field not in node.properties:
                raise ValidationError(node.id, field)

    def compile(self, node: Node) -> str:
        return self.render(node)

    def render(self, node: Node) -> str:
        raise NotImplementedError


class EC2Compiler(ResourceCompiler):
    resource_type = "aws_instance"
    required_fields = ("ami", "instance_type")

    def render(self, node: Node) -> str:
        props = node.properties
        lines = [
            f'resource "aws_instance" "{node.id}" {{',
            f"  ami           = {hcl_string(props['ami'])}",
            f"  instance_type = {hcl_string(props['instance_type'])}",
        ]

        if isinstance(props.get("name"), str):
            lines += [
                "",
                "  tags = merge(var.tags, {",
                f"    Name = {hcl_string(props['name'])}",
                "  })",
            ]

        if isinstance(props.get("security_group"), str):
            lines += ["", f"  vpc_security_group_ids = [aws_security_group.{_reference(node, 'security_group')}.id]"]

        if isinstance(props.get("subnet"), str):
            lines += ["", f"  subnet_id = aws_subnet.{_reference(node, 'subnet')}.id"]

        lines.append("}")
        return "\n".join(lines) + "\n"


class S3Compiler(ResourceCompiler):
    resource_type = "aws_s3_bucket"
    required_fields = ("bucket_name",)

    def render(self, node: Node) -> str:
        hcl = (
            f'resource "aws_s3_bucket" "{node.id}" {{\n'
            f"  bucket = {hcl_string(node.properties['bucket_name'])}\n"
            "\n"
            "  tags = var.tags\n"
            "}\n"
        )

        if node.properties.get("versioning") is True:
            hcl += (
                "\n"
                f'resource "aws_s3_bucket_versioning" "{node.id}_versioning" {{\n'
                f"  bucket = aws_s3_bucket.{node.id}.id\n"
                "\n"
                "  versioning_configuration {\n"
                '    status = "Enabled"\n'
                "  }\n"
                "}\n"
            )

        return hcl


class SecurityGroupCompiler(ResourceCompiler):
    resource_type = "aws_security_group"
    required_fields = ("name", "description")

    def render(self, node: Node) -> str:
        props = node.properties
        lines = [
            f'resource "aws_security_group" "{node.id}" {{',
            f"  name        = {hcl_string(props['name'])}",
            f"  description = {hcl_string(props['description'])}",
        ]

        if isinstance(props.get("vpc"), str):
            lines.append(f"  vpc_id      = aws_vpc.{_reference(node, 'vpc')}.id")

        ingress = props.get("ingress") or []
        if not isinstance(ingress, list):
            raise CompileError("ingress must be a list of rules")
        for rule in ingress:
            if not isinstance(rule, dict):
                raise CompileError(f"ingress rule must be an object, got {type(rule).__name__}")
            lines += [
                "",
                "  ingress {",
                f"    from_port   = {hcl_number(rule.get('from_port', 0))}",
                f"    to_port     = {hcl_number(rule.get('to_port', 0))}",
                f"    protocol    = {hcl_string(rule.get('protocol', 'tcp'))}",
                f"    cidr_blocks = {hcl_string_list(rule.get('cidr_blocks', '0.0.0.0/0'))}",
                "  }",
            ]

        # Default allow-all egress
        lines += [
            "",
            "  egress {",
            "    from_port   = 0",
            "    to_port     = 0",
            '    protocol    = "-1"',
            '    cidr_blocks = ["0.0.0.0/0"]',
            "  }",
            "",
            "  tags = var.tags",
            "}",
        ]
        return "\n".join(lines) + "\n"


class VPCCompiler(ResourceCompiler):
    resource_type = "aws_vpc"
    required_fields = ("cidr_block",)

    def render(self, node: Node) -> str:
        props = node.properties
        lines = [
            f'resource "aws_vpc" "{node.id}" {{',
            f"  cidr_block           = {hcl_string(props['cidr_block'])}",
            f"  enable_dns_hostnames = {hcl_bool(props.get('enable_dns_hostnames', True))}",
            f"  enable_dns_support   = {hcl_bool(props.get('enable_dns_support', True))}",
        ]
        lines += _name_tags(props)
        lines.append("}")
        return "\n".join(lines) + "\n"


class SubnetCompiler(ResourceCompiler):
    resource_type = "aws_subnet"
    required_fields = ("vpc", "cidr_block")

    def render(self, node: Node) -> str:
        props = node.properties
        lines = [
            f'resource "aws_subnet" "{node.id}" {{',
            f"  vpc_id     = aws_vpc.{_reference(node, 'vpc')}.id",
            f"  cidr_block = {hcl_string(props['cidr_block'])}",
        ]
        if props.get("availability_zone"):
            lines.append(f"  availability_zone = {hcl_string(props['availability_zone'])}")
        if "map_public_ip_on_launch" in props:
            lines.append(f"  map_public_ip_on_launch = {hcl_bool(props['map_public_ip_on_launch'])}")
        lines += _name_tags(props)
        lines.append("}")
        return "\n".join(lines) + "\n"


class RDSCompiler(ResourceCompiler):
    resource_type = "aws_db_instance"
    required_fields = ("engine", "instance_class", "allocated_storage", "username", "password")

    def render(self, node: Node) -> str:
        props = node.properties
        lines = [
            f'resource "aws_db_instance" "{node.id}" {{',
            f"  engine              = {hcl_string(props['engine'])}",
            f"  instance_class      = {hcl_string(props['instance_class'])}",
            f"  allocated_storage   = {hcl_number(props['allocated_storage'])}",
            f"  username            = {hcl_string(props['username'])}",
            f"  password            = {hcl_string(props['password'])}",
            f"  skip_final_snapshot = {hcl_bool(props.get('skip_final_snapshot', True))}",
        ]
        if props.get("engine_version"):
            lines.append(f"  engine_version      = {hcl_string(props['engine_version'])}")
        if props.get("db_name"):
            lines.append(f"  db_name             = {hcl_string(props['db_name'])}")
        if isinstance(props.get("security_group"), str):
            lines.append(
                f"  vpc_security_group_ids = [aws_security_group.{_reference(node, 'security_group')}.id]"
            )
        lines += _name_tags(props)
        lines.append("}")
        return "\n".join(lines) + "\n"


def _name_tags(props: Mapping[str, Any]) -> List[str]:
    if isinstance(props.get("name"), str):
        return [
            "",
            "  tags = merge(var.tags, {",
            f"    Name = {hcl_string(props['name'])}",
            "  })",
        ]
    return ["", "  tags = var.tags"]


def _build_catalog(classes: Iterable[Type[ResourceCompiler]]) -> Mapping[str, ResourceCompiler]:
    return MappingProxyType({cls.resource_type: cls() for cls in classes})


RESOURCE_COMPILERS: Mapping[str, ResourceCompiler] = _build_catalog((
    EC2Compiler,
    S3Compiler,
    SecurityGroupCompiler,
    RDSCompiler,
    VPCCompiler,
    SubnetCompiler,
))

SUPPORTED_RESOURCE_TYPES = frozenset(RESOURCE_COMPILERS)


# =============================================================================
# Graph compiler
# =============================================================================

class GraphCompiler:
    """
    Compiles a resource graph into a CompiledCode bundle.

    Pure: no I/O, no state between calls. Any failure aborts the whole
    compilation; no partial bundle is returned.
    """

    def __init__(self, catalog: Optional[Mapping[str, ResourceCompiler]] = None):
        self._catalog = catalog if catalog is not None else RESOURCE_COMPILERS

    def compile(self, graph: Graph, cloud_config: CloudConfig) -> CompiledCode:
        """
        Compile every node of the graph.

        Raises:
            UnsupportedResourceType: Node type not in the catalog
            ValidationError: Node missing a required property
            CompileError: Node could not be rendered
        """
        main_parts: List[str] = []
        output_parts: List[str] = []

        provider = self.generate_provider(cloud_config)

        for node in graph.nodes:
            compiler = self._catalog.get(node.type)
            if compiler is None:
                raise UnsupportedResourceType(node.type)

            compiler.validate(node)

            if not _IDENTIFIER_RE.match(node.id):
                raise CompileError(f"compilation failed for {node.id}: invalid resource name")

            try:
                hcl = compiler.compile(node)
            except EngineError as e:
                raise e.wrap(f"compilation failed for {node.id}")
            except (KeyError, TypeError, ValueError) as e:
                raise CompileError(f"compilation failed for {node.id}: {e}")

            main_parts.append(hcl)
            main_parts.append("\n\n")

            output_parts.append(self.generate_output(node))
            output_parts.append("\n")

        logger.debug(f"Compiled {len(graph.nodes)} nodes for provider {cloud_config.provider!r}")

        return CompiledCode(
            main="".join(main_parts),
            variables=self.generate_variables(),
            outputs="".join(output_parts),
            provider=provider,
        )

    def generate_provider(self, cloud_config: CloudConfig) -> str:
        """Provider/version pin block; unknown providers yield an empty block."""
        if cloud_config.provider == "aws":
            return (
                "\n"
                "terraform {\n"
                "  required_providers {\n"
                "    aws = {\n"
                '      source  = "hashicorp/aws"\n'
                '      version = "~> 5.0"\n'
                "    }\n"
                "  }\n"
                "}\n"
                "\n"
                'provider "aws" {\n'
                f"  region = {hcl_string(cloud_config.region)}\n"
                "}\n"
            )

        logger.warning(f"No provider block for cloud provider {cloud_config.provider!r}")
        return ""

    def generate_output(self, node: Node) -> str:
        return (
            "\n"
            f'output "{node.id}_id" {{\n'
            f"  value       = {node.type}.{node.id}.id\n"
            f'  description = "ID of {node.id}"\n'
            "}\n"
        )

    def generate_variables(self) -> str:
        return (
            "\n"
            'variable "tags" {\n'
            '  description = "Common tags for all resources"\n'
            "  type        = map(string)\n"
            "  default     = {\n"
            '    ManagedBy = "IaC-Studio"\n'
            "  }\n"
            "}\n"
        )
