"""Shared pytest configuration and fixtures."""

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from stacks.buildspec import container_buildspec
from stacks.config import PipelineConfig, Topology
from stacks.pipeline_definition import BuildProject
from stacks.pipeline_stack import ContDeployDockerStack


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "synth: tests that synthesise a CDK stack")


@pytest.fixture
def build_project() -> BuildProject:
    return BuildProject(name="hello-world-webapp-build", buildspec=container_buildspec())


@pytest.fixture
def build_only_config() -> PipelineConfig:
    return PipelineConfig(topology=Topology.BUILD_ONLY)


@pytest.fixture
def deploy_config() -> PipelineConfig:
    return PipelineConfig(topology=Topology.BUILD_AND_DEPLOY)


@pytest.fixture
def synth():
    """Synthesise a stack for a config; returns (stack, template)."""

    def _synth(config: PipelineConfig):
        app = cdk.App()
        stack = ContDeployDockerStack(app, "TestStack", config=config)
        return stack, Template.from_stack(stack)

    return _synth
