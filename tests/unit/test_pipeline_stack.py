"""Synthesis tests for the pipeline stack."""

import json

import pytest
from aws_cdk import aws_codepipeline as codepipeline

from stacks.buildspec import container_buildspec
from stacks.config import PipelineConfig, SubnetIsolation, Topology
from stacks.pipeline_definition import (
    Artifact,
    PipelineValidationError,
    ServiceRef,
    define_deploy_action,
)

pytestmark = pytest.mark.synth


def _only(template, resource_type: str) -> dict:
    resources = template.find_resources(resource_type)
    assert len(resources) == 1
    return next(iter(resources.values()))["Properties"]


def _actions_by_stage(template) -> dict:
    pipeline = _only(template, "AWS::CodePipeline::Pipeline")
    return {stage["Name"]: stage["Actions"] for stage in pipeline["Stages"]}


# ── Build-only topology ──────────────────────────────────────────────────────

def test_build_only_pipeline_stages(synth, build_only_config) -> None:
    stack, template = synth(build_only_config)
    stages = _actions_by_stage(template)
    assert list(stages) == ["Source", "Build"]
    assert stack.definition.stage_names() == ["Source", "Build"]


def test_build_only_has_no_service(synth, build_only_config) -> None:
    _, template = synth(build_only_config)
    template.resource_count_is("AWS::ECS::Service", 0)
    template.resource_count_is("AWS::EC2::VPCEndpoint", 0)
    template.resource_count_is("AWS::EC2::NatGateway", 0)


def test_github_source_uses_secret_reference(synth, build_only_config) -> None:
    _, template = synth(build_only_config)
    (source,) = _actions_by_stage(template)["Source"]
    assert source["ActionTypeId"]["Provider"] == "GitHub"
    assert source["Configuration"]["Owner"] == "logemann"
    assert source["Configuration"]["Repo"] == "HelloWorldWebApp"
    assert source["Configuration"]["Branch"] == "master"
    assert "github/oauth/token" in source["Configuration"]["OAuthToken"]
    assert source["OutputArtifacts"] == [{"Name": "SourceOutput"}]
    assert not source.get("InputArtifacts")


def test_build_action_chains_source_output(synth, build_only_config) -> None:
    _, template = synth(build_only_config)
    (build,) = _actions_by_stage(template)["Build"]
    assert build["ActionTypeId"]["Provider"] == "CodeBuild"
    assert build["InputArtifacts"] == [{"Name": "SourceOutput"}]
    assert build["OutputArtifacts"] == [{"Name": "BuildOutput"}]


def test_codebuild_project(synth, build_only_config) -> None:
    _, template = synth(build_only_config)
    project = _only(template, "AWS::CodeBuild::Project")
    assert project["Name"] == "hello-world-webapp-build"
    assert project["Environment"]["PrivilegedMode"] is True
    assert json.loads(project["Source"]["BuildSpec"]) == container_buildspec().to_dict()

    variables = {v["Name"]: v["Value"] for v in project["Environment"]["EnvironmentVariables"]}
    assert variables["CONTAINER_NAME"] == "hello-world-webapp"
    assert variables["IMAGE_TAG"] == "latest"
    assert "REPOSITORY_URI" in variables
    assert "IMAGE_REPO_NAME" not in variables

    assert project["Cache"]["Type"] == "S3"


def test_artifact_bucket_is_private_and_expires(synth, build_only_config) -> None:
    _, template = synth(build_only_config)
    bucket = _only(template, "AWS::S3::Bucket")
    assert bucket["PublicAccessBlockConfiguration"] == {
        "BlockPublicAcls": True,
        "BlockPublicPolicy": True,
        "IgnorePublicAcls": True,
        "RestrictPublicBuckets": True,
    }
    encryption = bucket["BucketEncryption"]["ServerSideEncryptionConfiguration"][0]
    assert encryption["ServerSideEncryptionByDefault"]["SSEAlgorithm"] == "AES256"
    (rule,) = bucket["LifecycleConfiguration"]["Rules"]
    assert rule["ExpirationInDays"] == 30


def test_ecr_repository_and_cluster_names(synth, build_only_config) -> None:
    _, template = synth(build_only_config)
    template.has_resource_properties("AWS::ECR::Repository", {"RepositoryName": "hello-world-webapp"})
    template.has_resource_properties("AWS::ECS::Cluster", {"ClusterName": "hello-world-cluster"})
    template.has_resource_properties("AWS::EC2::VPC", {"CidrBlock": "20.0.0.0/16"})


# ── Build-and-deploy topology ────────────────────────────────────────────────

def test_deploy_pipeline_stages(synth, deploy_config) -> None:
    stack, template = synth(deploy_config)
    stages = _actions_by_stage(template)
    assert list(stages) == ["Source", "Build", "Deploy"]
    (deploy,) = stages["Deploy"]
    assert deploy["ActionTypeId"]["Provider"] == "ECS"
    assert deploy["InputArtifacts"] == [{"Name": "BuildOutput"}]
    assert not deploy.get("OutputArtifacts")
    assert [a.name for a in stack.definition.artifact_chain()] == ["SourceOutput", "BuildOutput"]


def test_topologies_render_identical_source_and_build(synth, build_only_config, deploy_config) -> None:
    _, build_only = synth(build_only_config)
    _, with_deploy = synth(deploy_config)
    a = _actions_by_stage(build_only)
    b = _actions_by_stage(with_deploy)
    assert a["Source"][0]["Configuration"]["Repo"] == b["Source"][0]["Configuration"]["Repo"]
    assert a["Build"][0]["InputArtifacts"] == b["Build"][0]["InputArtifacts"]
    assert a["Build"][0]["OutputArtifacts"] == b["Build"][0]["OutputArtifacts"]


def test_fargate_service_sizing(synth, deploy_config) -> None:
    _, template = synth(deploy_config)
    template.resource_count_is("AWS::ECS::Service", 1)
    task = _only(template, "AWS::ECS::TaskDefinition")
    assert task["Cpu"] == "256"
    assert task["Memory"] == "512"
    (container,) = task["ContainerDefinitions"]
    assert container["Name"] == "hello-world-webapp"
    assert container["PortMappings"][0]["ContainerPort"] == 8080
    template.resource_count_is("AWS::ElasticLoadBalancingV2::LoadBalancer", 1)


def test_isolated_deploy_adds_vpc_endpoints(synth, deploy_config) -> None:
    _, template = synth(deploy_config)
    template.resource_count_is("AWS::EC2::VPCEndpoint", 4)
    template.resource_count_is("AWS::EC2::NatGateway", 0)


def test_private_isolation_uses_nat(synth) -> None:
    config = PipelineConfig(topology=Topology.BUILD_AND_DEPLOY, isolation=SubnetIsolation.PRIVATE)
    _, template = synth(config)
    template.resource_count_is("AWS::EC2::NatGateway", 1)
    template.resource_count_is("AWS::EC2::VPCEndpoint", 0)


def test_bootstrap_image_used_for_first_deploy(synth) -> None:
    config = PipelineConfig(topology=Topology.BUILD_AND_DEPLOY, bootstrap_image="amazon/amazon-ecs-sample")
    _, template = synth(config)
    (container,) = _only(template, "AWS::ECS::TaskDefinition")["ContainerDefinitions"]
    assert container["Image"] == "amazon/amazon-ecs-sample"


def test_deploy_outputs_load_balancer_dns(synth, deploy_config) -> None:
    _, template = synth(deploy_config)
    outputs = template.find_outputs("*")
    assert "LoadBalancerDns" in outputs
    assert "RepositoryUri" in outputs


def test_deploy_action_for_another_service_is_rejected(synth, deploy_config) -> None:
    stack, _ = synth(deploy_config)
    action = define_deploy_action(
        ServiceRef(cluster_name="hello-world-cluster", service_name="other", container_name="hello-world-webapp"),
        Artifact(name="BuildOutput"),
        action_name="OtherDeploy",
    )
    artifacts = {"BuildOutput": codepipeline.Artifact("BuildOutput")}
    with pytest.raises(PipelineValidationError, match="targets hello-world-cluster/other"):
        stack._render_action(action, artifacts)


def test_deploy_action_targets_configured_service(synth, deploy_config) -> None:
    stack, _ = synth(deploy_config)
    (deploy,) = stack.definition.stages[-1].actions
    assert deploy.configuration == {
        "cluster": "hello-world-cluster",
        "service": "hello-world-webapp",
        "container": "hello-world-webapp",
    }
