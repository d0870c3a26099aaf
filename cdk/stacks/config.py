"""
Stack configuration.

Values come from CDK context (cdk.json or `cdk synth -c key=value`); any
key not present in context keeps the default below. Context values passed
on the command line arrive as strings and are coerced by pydantic.
"""

import ipaddress
import re
from enum import Enum
from typing import Optional

from constructs import Node
from pydantic import BaseModel, Field, field_validator, model_validator

# Fargate task sizes: cpu units -> allowed memory (MiB)
FARGATE_MEMORY_BY_CPU = {
    256: (512, 1024, 2048),
    512: tuple(range(1024, 4096 + 1, 1024)),
    1024: tuple(range(2048, 8192 + 1, 1024)),
    2048: tuple(range(4096, 16384 + 1, 1024)),
    4096: tuple(range(8192, 30720 + 1, 1024)),
}

ECR_NAME_PATTERN = re.compile(r"^(?:[a-z0-9]+(?:[._-][a-z0-9]+)*/)*[a-z0-9]+(?:[._-][a-z0-9]+)*$")


class Topology(str, Enum):
    BUILD_ONLY = "build-only"
    BUILD_AND_DEPLOY = "build-and-deploy"


class SubnetIsolation(str, Enum):
    ISOLATED = "isolated"  # no internet route; VPC endpoints added when deploying
    PRIVATE = "private"    # NAT egress
    PUBLIC = "public"


class PipelineConfig(BaseModel):
    """Everything the stack needs, validated up front."""

    # Pipeline
    pipeline_name: str = Field(default="hello-world-webapp-pipeline", min_length=1)
    topology: Topology = Topology.BUILD_ONLY

    # Source repository (GitHub)
    repo_owner: str = Field(default="logemann", min_length=1)
    repo_name: str = Field(default="HelloWorldWebApp", min_length=1)
    branch: str = Field(default="master", min_length=1)
    # Secrets Manager secret name holding the GitHub OAuth token
    github_token_secret: str = Field(default="github/oauth/token", min_length=1)

    # Image / build
    image_repo_name: str = "hello-world-webapp"
    container_name: str = Field(default="hello-world-webapp", min_length=1)
    build_project_name: str = Field(default="hello-world-webapp-build", min_length=1)
    cache_prefix: str = Field(default="depsCache", min_length=1)
    artifact_retention_days: int = Field(default=30, gt=0)

    # Compute
    cluster_name: str = Field(default="hello-world-cluster", min_length=1)
    service_name: str = Field(default="hello-world-webapp", min_length=1)
    memory_limit_mib: int = 512
    cpu: int = 256
    desired_count: int = Field(default=1, ge=1)
    container_port: int = Field(default=8080, gt=0, le=65535)
    # Image for the service's first deployment, before the pipeline has pushed one
    bootstrap_image: Optional[str] = None

    # Network
    vpc_cidr: str = "20.0.0.0/16"
    max_azs: int = Field(default=2, ge=1)
    subnet_cidr_mask: int = 26
    isolation: SubnetIsolation = SubnetIsolation.ISOLATED

    @field_validator("image_repo_name")
    @classmethod
    def check_image_repo_name(cls, value: str) -> str:
        if not ECR_NAME_PATTERN.match(value) or not 2 <= len(value) <= 256:
            raise ValueError(f"'{value}' is not a valid ECR repository name")
        return value

    @field_validator("vpc_cidr")
    @classmethod
    def check_vpc_cidr(cls, value: str) -> str:
        try:
            network = ipaddress.IPv4Network(value)
        except ValueError as e:
            raise ValueError(f"'{value}' is not a valid IPv4 CIDR block: {e}") from e
        if not 16 <= network.prefixlen <= 28:
            raise ValueError(f"VPC prefix length must be between /16 and /28, got /{network.prefixlen}")
        return value

    @model_validator(mode="after")
    def check_sizing(self) -> "PipelineConfig":
        allowed = FARGATE_MEMORY_BY_CPU.get(self.cpu)
        if allowed is None:
            raise ValueError(f"cpu must be one of {sorted(FARGATE_MEMORY_BY_CPU)}, got {self.cpu}")
        if self.memory_limit_mib not in allowed:
            raise ValueError(
                f"memory_limit_mib {self.memory_limit_mib} is not valid for cpu {self.cpu}; "
                f"allowed: {allowed[0]}-{allowed[-1]}"
            )

        vpc_prefix = ipaddress.IPv4Network(self.vpc_cidr).prefixlen
        if not vpc_prefix <= self.subnet_cidr_mask <= 28:
            raise ValueError(
                f"subnet_cidr_mask must be between /{vpc_prefix} and /28, got /{self.subnet_cidr_mask}"
            )

        # one subnet per group per AZ, all carved from the VPC block
        subnet_count = self.subnet_group_count * self.max_azs
        if subnet_count * 2 ** (32 - self.subnet_cidr_mask) > 2 ** (32 - vpc_prefix):
            raise ValueError(
                f"{subnet_count} subnets of /{self.subnet_cidr_mask} do not fit in {self.vpc_cidr}"
            )

        # an application load balancer needs subnets in at least two AZs
        if self.deploys and self.max_azs < 2:
            raise ValueError(f"build-and-deploy needs max_azs >= 2, got {self.max_azs}")
        return self

    @property
    def deploys(self) -> bool:
        return self.topology is Topology.BUILD_AND_DEPLOY

    @property
    def needs_public_subnets(self) -> bool:
        """ALB or NAT gateway needs a public "ingress" subnet group."""
        return self.deploys or self.isolation is not SubnetIsolation.ISOLATED

    @property
    def subnet_group_count(self) -> int:
        if self.needs_public_subnets and self.isolation is not SubnetIsolation.PUBLIC:
            return 2
        return 1

    @classmethod
    def from_context(cls, node: Node) -> "PipelineConfig":
        values = {}
        for name in cls.model_fields:
            value = node.try_get_context(name)
            if value is not None:
                values[name] = value
        return cls(**values)
