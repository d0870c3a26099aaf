import logging
from typing import Dict, List, Optional

from aws_cdk import (
    Stack,
    Duration,
    RemovalPolicy,
    SecretValue,
    CfnOutput,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_ecs_patterns as ecs_patterns,
    aws_codebuild as codebuild,
    aws_codepipeline as codepipeline,
    aws_codepipeline_actions as cp_actions,
    aws_s3 as s3,
    aws_iam as iam,
)
from constructs import Construct

from stacks.buildspec import container_buildspec
from stacks.config import PipelineConfig, SubnetIsolation
from stacks.pipeline_definition import (
    Action,
    ActionKind,
    BuildProject,
    PipelineDefinition,
    PipelineValidationError,
    ServiceRef,
    assemble,
    define_build_action,
    define_deploy_action,
    define_source_action,
    standard_stages,
)

logger = logging.getLogger(__name__)

TASK_SUBNET_TYPES = {
    SubnetIsolation.ISOLATED: ec2.SubnetType.PRIVATE_ISOLATED,
    SubnetIsolation.PRIVATE: ec2.SubnetType.PRIVATE_WITH_EGRESS,
    SubnetIsolation.PUBLIC: ec2.SubnetType.PUBLIC,
}


class ContDeployDockerStack(Stack):
    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        config: Optional[PipelineConfig] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.config = config = config or PipelineConfig()
        task_subnet_type = TASK_SUBNET_TYPES[config.isolation]

        # ─────────────────────────────────────────────
        # 1. VPC
        #    Public "ingress" subnets only when the ALB or NAT needs them
        # ─────────────────────────────────────────────
        subnets = [
            ec2.SubnetConfiguration(
                name="app",
                subnet_type=task_subnet_type,
                cidr_mask=config.subnet_cidr_mask,
            ),
        ]
        if config.subnet_group_count == 2:
            subnets.append(
                ec2.SubnetConfiguration(
                    name="ingress",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=config.subnet_cidr_mask,
                )
            )

        self.vpc = ec2.Vpc(
            self,
            "Vpc",
            ip_addresses=ec2.IpAddresses.cidr(config.vpc_cidr),
            max_azs=config.max_azs,
            nat_gateways=1 if config.isolation is SubnetIsolation.PRIVATE else 0,
            subnet_configuration=subnets,
        )

        # Isolated tasks reach ECR, CloudWatch Logs and S3 through endpoints
        if config.deploys and config.isolation is SubnetIsolation.ISOLATED:
            endpoint_subnets = ec2.SubnetSelection(subnet_type=task_subnet_type)
            for endpoint_id, service in (
                ("EcrApiEndpoint", ec2.InterfaceVpcEndpointAwsService.ECR),
                ("EcrDockerEndpoint", ec2.InterfaceVpcEndpointAwsService.ECR_DOCKER),
                ("LogsEndpoint", ec2.InterfaceVpcEndpointAwsService.CLOUDWATCH_LOGS),
            ):
                self.vpc.add_interface_endpoint(endpoint_id, service=service, subnets=endpoint_subnets)
            self.vpc.add_gateway_endpoint(
                "S3Endpoint",
                service=ec2.GatewayVpcEndpointAwsService.S3,
                subnets=[endpoint_subnets],
            )

        # ─────────────────────────────────────────────
        # 2. ECR repository + ECS cluster
        # ─────────────────────────────────────────────
        self.repository = ecr.Repository(
            self,
            "ImageRepository",
            repository_name=config.image_repo_name,
            removal_policy=RemovalPolicy.RETAIN,  # keep pushed images on cdk destroy
        )

        self.cluster = ecs.Cluster(
            self,
            "Cluster",
            vpc=self.vpc,
            cluster_name=config.cluster_name,
        )

        # ─────────────────────────────────────────────
        # 3. S3 bucket: pipeline artifacts + build cache
        # ─────────────────────────────────────────────
        self.artifact_bucket = s3.Bucket(
            self,
            "ArtifactBucket",
            versioned=False,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            public_read_access=False,
            encryption=s3.BucketEncryption.S3_MANAGED,
            lifecycle_rules=[
                s3.LifecycleRule(expiration=Duration.days(config.artifact_retention_days)),
            ],
            removal_policy=RemovalPolicy.DESTROY,
            auto_delete_objects=True,
        )

        # ─────────────────────────────────────────────
        # 4. CodeBuild project
        #    Builds the image, pushes latest + commit tag, writes imagedefinitions.json
        # ─────────────────────────────────────────────
        build_project = BuildProject(
            name=config.build_project_name,
            buildspec=container_buildspec(),
            environment_variables={
                "CONTAINER_NAME": config.container_name,
                "IMAGE_TAG": "latest",
            },
        )
        self.build_project = self._create_build_project(build_project)

        # ─────────────────────────────────────────────
        # 5. Fargate service behind an ALB (build-and-deploy only)
        # ─────────────────────────────────────────────
        self.service = None
        if config.deploys:
            self.service = self._create_service(task_subnet_type)

        # ─────────────────────────────────────────────
        # 6. Pipeline: Source -> Build [-> Deploy]
        # ─────────────────────────────────────────────
        self.definition = self._define_pipeline(build_project)
        self.pipeline = codepipeline.Pipeline(
            self,
            "Pipeline",
            pipeline_name=self.definition.name,
            artifact_bucket=self.artifact_bucket,
            stages=self._render_stages(self.definition),
        )

        # ─────────────────────────────────────────────
        # 7. Outputs
        # ─────────────────────────────────────────────
        CfnOutput(
            self,
            "RepositoryUri",
            value=self.repository.repository_uri,
            description="ECR repository the build pushes to",
        )

        CfnOutput(
            self,
            "PipelineName",
            value=self.pipeline.pipeline_name,
            description="CodePipeline name",
        )

        CfnOutput(
            self,
            "ArtifactBucketName",
            value=self.artifact_bucket.bucket_name,
            description="S3 bucket for pipeline artifacts and build cache",
        )

        if self.service is not None:
            CfnOutput(
                self,
                "LoadBalancerDns",
                value=self.service.load_balancer.load_balancer_dns_name,
                description="Public DNS name of the service load balancer",
            )

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _create_build_project(self, project: BuildProject) -> codebuild.PipelineProject:
        """CodeBuild project running the container build spec."""
        environment_variables = {
            name: codebuild.BuildEnvironmentVariable(value=value)
            for name, value in project.environment_variables.items()
        }
        environment_variables["REPOSITORY_URI"] = codebuild.BuildEnvironmentVariable(
            value=self.repository.repository_uri,
        )

        pipeline_project = codebuild.PipelineProject(
            self,
            "BuildProject",
            project_name=project.name,
            environment=codebuild.BuildEnvironment(
                build_image=codebuild.LinuxBuildImage.STANDARD_7_0,
                privileged=True,  # docker build
            ),
            environment_variables=environment_variables,
            build_spec=codebuild.BuildSpec.from_object(project.buildspec.to_dict()),
            cache=codebuild.Cache.bucket(self.artifact_bucket, prefix=self.config.cache_prefix),
        )

        pipeline_project.role.add_managed_policy(
            iam.ManagedPolicy.from_aws_managed_policy_name("AmazonEC2ContainerRegistryPowerUser")
        )
        self.repository.grant_pull_push(pipeline_project)
        return pipeline_project

    def _create_service(
        self, task_subnet_type: ec2.SubnetType
    ) -> ecs_patterns.ApplicationLoadBalancedFargateService:
        """Load-balanced Fargate service the deploy stage updates."""
        config = self.config
        if config.bootstrap_image:
            image = ecs.ContainerImage.from_registry(config.bootstrap_image)
        else:
            image = ecs.ContainerImage.from_ecr_repository(self.repository, "latest")

        return ecs_patterns.ApplicationLoadBalancedFargateService(
            self,
            "Service",
            cluster=self.cluster,
            service_name=config.service_name,
            cpu=config.cpu,
            memory_limit_mib=config.memory_limit_mib,
            desired_count=config.desired_count,
            public_load_balancer=True,
            assign_public_ip=task_subnet_type is ec2.SubnetType.PUBLIC,
            task_subnets=ec2.SubnetSelection(subnet_type=task_subnet_type),
            task_image_options=ecs_patterns.ApplicationLoadBalancedTaskImageOptions(
                image=image,
                container_name=config.container_name,
                container_port=config.container_port,
            ),
        )

    def _define_pipeline(self, build_project: BuildProject) -> PipelineDefinition:
        config = self.config

        source = define_source_action(
            repo_owner=config.repo_owner,
            repo_name=config.repo_name,
            branch=config.branch,
            credential_ref=config.github_token_secret,
        )
        build, build_output = define_build_action(build_project, source.output_artifact)

        deploy = None
        if config.deploys:
            deploy = define_deploy_action(
                ServiceRef(
                    cluster_name=config.cluster_name,
                    service_name=config.service_name,
                    container_name=config.container_name,
                ),
                build_output,
            )

        logger.info(f"Defining pipeline '{config.pipeline_name}' ({config.topology.value})")
        return assemble(standard_stages(source, build, deploy), name=config.pipeline_name)

    def _render_stages(self, definition: PipelineDefinition) -> List[codepipeline.StageProps]:
        """Map the validated definition onto CodePipeline stages and actions."""
        artifacts: Dict[str, codepipeline.Artifact] = {
            artifact.name: codepipeline.Artifact(artifact.name)
            for artifact in definition.artifact_chain()
        }

        return [
            codepipeline.StageProps(
                stage_name=stage.name,
                actions=[self._render_action(action, artifacts) for action in stage.actions],
            )
            for stage in definition.stages
        ]

    def _render_action(
        self, action: Action, artifacts: Dict[str, codepipeline.Artifact]
    ) -> codepipeline.IAction:
        settings = action.configuration

        if action.kind is ActionKind.SOURCE:
            return cp_actions.GitHubSourceAction(
                action_name=action.name,
                owner=settings["owner"],
                repo=settings["repo"],
                branch=settings["branch"],
                oauth_token=SecretValue.secrets_manager(settings["credential_ref"]),
                output=artifacts[action.output_artifact.name],
            )

        if action.kind is ActionKind.BUILD:
            return cp_actions.CodeBuildAction(
                action_name=action.name,
                project=self.build_project,
                input=artifacts[action.input_artifact.name],
                outputs=[artifacts[action.output_artifact.name]],
            )

        if self.service is None:
            raise PipelineValidationError(
                f"Deploy action '{action.name}' has no service to deploy to"
            )
        target = (settings.get("cluster"), settings.get("service"), settings.get("container"))
        expected = (self.config.cluster_name, self.config.service_name, self.config.container_name)
        if target != expected:
            raise PipelineValidationError(
                f"Deploy action '{action.name}' targets {'/'.join(map(str, target))}, "
                f"but this stack deploys {'/'.join(expected)}"
            )
        return cp_actions.EcsDeployAction(
            action_name=action.name,
            service=self.service.service,
            input=artifacts[action.input_artifact.name],
        )
