#!/usr/bin/env python3
import logging

import aws_cdk as cdk
from pydantic import ValidationError

from stacks.config import PipelineConfig
from stacks.pipeline_stack import ContDeployDockerStack

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger()

app = cdk.App()

try:
    config = PipelineConfig.from_context(app.node)
except ValidationError as e:
    logger.critical(f"Invalid pipeline configuration: {e}")
    raise

ContDeployDockerStack(
    app,
    app.node.try_get_context("stack_name") or "ContDeployDockerStack",
    config=config,
    description=f"Container CD pipeline for {config.repo_owner}/{config.repo_name}: "
                f"CodePipeline, CodeBuild, ECR, ECS",
    env=cdk.Environment(
        account=app.node.try_get_context("account"),
        region=app.node.try_get_context("region") or "us-east-1",
    ),
)

app.synth()
