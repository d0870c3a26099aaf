"""
CodeBuild build spec for the container image build.

The build action runs four phases:
  1. install    : optional setup, "finally" always runs
  2. pre_build  : ECR login, IMAGE_TAG from the resolved source revision
  3. build      : gradle build, docker build/tag/push (latest + IMAGE_TAG)
  4. post_build : write imagedefinitions.json for the ECS deploy action

imagedefinitions.json is the only declared artifact. Its shape is the
contract with the ECS deploy action:
    [{"name": "<container name>", "imageUri": "<repository uri>:latest"}]
"""

import json
from typing import ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

BUILDSPEC_VERSION = "0.2"
IMAGE_DEFINITIONS_FILE = "imagedefinitions.json"
REVISION_VARIABLE = "CODEBUILD_RESOLVED_SOURCE_VERSION"
GRADLE_CACHE_PATH = "/root/.gradle/**/*"


class ImageTagPolicy(BaseModel):
    """Image tag = first `length` chars of the source revision, else `fallback`."""

    model_config = ConfigDict(frozen=True)

    length: int = Field(default=7, gt=0)
    fallback: str = Field(default="latest", min_length=1)

    def tag(self, revision: Optional[str]) -> str:
        revision = (revision or "").strip()
        return revision[: self.length] or self.fallback

    def shell_commands(self, variable: str = "IMAGE_TAG") -> List[str]:
        # same rule as tag(), evaluated inside CodeBuild
        return [
            f"COMMIT_HASH=$(echo ${REVISION_VARIABLE} | cut -c 1-{self.length})",
            f"{variable}=${{COMMIT_HASH:={self.fallback}}}",
        ]


class BuildPhase(BaseModel):
    commands: List[str] = Field(default_factory=list)
    finally_commands: List[str] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        rendered = {"commands": list(self.commands)}
        if self.finally_commands:
            rendered["finally"] = list(self.finally_commands)
        return rendered


class BuildSpec(BaseModel):
    """Ordered build phases plus declared cache paths and output files."""

    version: str = BUILDSPEC_VERSION
    install: Optional[BuildPhase] = None
    pre_build: Optional[BuildPhase] = None
    build: Optional[BuildPhase] = None
    post_build: Optional[BuildPhase] = None
    cache_paths: List[str] = Field(default_factory=list)
    artifact_files: List[str] = Field(default_factory=list)

    PHASE_ORDER: ClassVar[Tuple[str, ...]] = ("install", "pre_build", "build", "post_build")

    def phases(self) -> Dict[str, BuildPhase]:
        return {
            name: getattr(self, name)
            for name in self.PHASE_ORDER
            if getattr(self, name) is not None
        }

    def to_dict(self) -> dict:
        """Render to the structure accepted by codebuild.BuildSpec.from_object."""
        rendered = {
            "version": self.version,
            "phases": {name: phase.to_dict() for name, phase in self.phases().items()},
        }
        if self.artifact_files:
            rendered["artifacts"] = {"files": list(self.artifact_files)}
        if self.cache_paths:
            rendered["cache"] = {"paths": list(self.cache_paths)}
        return rendered


# ── imagedefinitions.json ─────────────────────────────────────────────────────

def image_definitions(container_name: str, repository_uri: str) -> List[Dict[str, str]]:
    """Single-element image definitions list pointing at the `latest` tag."""
    if not container_name or not container_name.strip():
        raise ValueError("container_name must not be empty")
    if not repository_uri or not repository_uri.strip():
        raise ValueError("repository_uri must not be empty")
    return [{"name": container_name, "imageUri": f"{repository_uri}:latest"}]


def render_image_definitions(container_name: str, repository_uri: str) -> str:
    """Compact JSON, byte-identical to what the post_build printf writes."""
    return json.dumps(
        image_definitions(container_name, repository_uri),
        separators=(",", ":"),
    )


# ── Container build spec ──────────────────────────────────────────────────────

DEFAULT_BUILD_COMMANDS = ["./gradlew bootJar"]


def container_buildspec(
    policy: Optional[ImageTagPolicy] = None,
    build_commands: Optional[List[str]] = None,
    dockerfile: str = "docker/Dockerfile",
) -> BuildSpec:
    """
    Build spec used by the pipeline's build action.

    Expects REPOSITORY_URI and CONTAINER_NAME in the build environment.
    """
    policy = policy or ImageTagPolicy()
    if build_commands is None:
        build_commands = DEFAULT_BUILD_COMMANDS

    return BuildSpec(
        install=BuildPhase(
            commands=["#apt-get update -y"],
            finally_commands=["echo Done installing deps"],
        ),
        pre_build=BuildPhase(
            commands=[
                "echo Logging in to Amazon ECR...",
                "aws ecr get-login-password --region $AWS_DEFAULT_REGION"
                " | docker login --username AWS --password-stdin ${REPOSITORY_URI%%/*}",
                *policy.shell_commands("IMAGE_TAG"),
            ],
        ),
        build=BuildPhase(
            commands=[
                "echo Build started on `date`",
                *build_commands,
                f"docker build -f {dockerfile} -t $REPOSITORY_URI:latest .",
                "docker tag $REPOSITORY_URI:latest $REPOSITORY_URI:$IMAGE_TAG",
                "docker push $REPOSITORY_URI:latest",
                "docker push $REPOSITORY_URI:$IMAGE_TAG",
            ],
            finally_commands=["echo Done building code"],
        ),
        post_build=BuildPhase(
            commands=[
                "echo Build completed on `date`",
                "printf '[{\"name\":\"%s\",\"imageUri\":\"%s\"}]'"
                f" \"$CONTAINER_NAME\" \"$REPOSITORY_URI:latest\" > {IMAGE_DEFINITIONS_FILE}",
            ],
        ),
        cache_paths=[GRADLE_CACHE_PATH],
        artifact_files=[IMAGE_DEFINITIONS_FILE],
    )
