"""
Pipeline definition: stages, actions and the artifacts passed between them.

Pure data, no CDK constructs. The stack renders a validated
PipelineDefinition into CodePipeline; nothing is rendered if assembly fails.

Artifacts form a single linear chain:
    Source --SourceOutput--> Build --BuildOutput--> Deploy
"""

import logging
from enum import Enum
from typing import Dict, List, NoReturn, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from stacks.buildspec import BuildSpec

logger = logging.getLogger(__name__)

# CodePipeline naming rules
ACTION_NAME_PATTERN = r"^[A-Za-z0-9.@\-_]+$"
ARTIFACT_NAME_PATTERN = r"^[A-Za-z0-9_\-]+$"


class PipelineValidationError(ValueError):
    """Stage/action/artifact graph is not a valid linear pipeline."""


class MissingCredentialError(PipelineValidationError):
    """Source action declared without a credential reference."""


class ActionKind(str, Enum):
    SOURCE = "source"
    BUILD = "build"
    DEPLOY = "deploy"


class Artifact(BaseModel):
    """Opaque handle; identity is the name."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=ARTIFACT_NAME_PATTERN, max_length=100)


class Action(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=ACTION_NAME_PATTERN, max_length=100)
    kind: ActionKind
    input_artifact: Optional[Artifact] = None
    output_artifact: Optional[Artifact] = None
    configuration: Dict[str, str] = Field(default_factory=dict)


class PipelineStage(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    actions: List[Action]

    def outputs(self) -> List[Artifact]:
        return [a.output_artifact for a in self.actions if a.output_artifact is not None]


class PipelineDefinition(BaseModel):
    """Validated pipeline. Build with assemble(), not directly."""

    model_config = ConfigDict(frozen=True)

    name: str
    stages: List[PipelineStage]

    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def artifact_chain(self) -> List[Artifact]:
        return [artifact for stage in self.stages for artifact in stage.outputs()]

    def describe(self) -> dict:
        """Plain-dict description of the pipeline, in stage order."""
        return {
            "name": self.name,
            "stages": [
                {
                    "name": stage.name,
                    "actions": [
                        {
                            "name": action.name,
                            "kind": action.kind.value,
                            "input": action.input_artifact.name if action.input_artifact else None,
                            "output": action.output_artifact.name if action.output_artifact else None,
                            "configuration": dict(action.configuration),
                        }
                        for action in stage.actions
                    ],
                }
                for stage in self.stages
            ],
        }


# ── Action inputs ─────────────────────────────────────────────────────────────

class BuildProject(BaseModel):
    """Build service project: name, build spec and plain environment variables."""

    name: str = Field(min_length=1)
    buildspec: BuildSpec
    environment_variables: Dict[str, str] = Field(default_factory=dict)


class ServiceRef(BaseModel):
    """Placeholder for the external load-balanced service the deploy action updates."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str = Field(min_length=1)
    service_name: str = Field(min_length=1)
    container_name: str = Field(min_length=1)


# ── Action factories ──────────────────────────────────────────────────────────

def _require(value: Optional[str], what: str) -> str:
    if value is None or not value.strip():
        raise PipelineValidationError(f"{what} must not be empty")
    return value


def define_source_action(
    repo_owner: str,
    repo_name: str,
    branch: str,
    credential_ref: Optional[str],
    action_name: str = "GitHubSource",
    output_name: str = "SourceOutput",
) -> Action:
    """
    Source fetch from a GitHub repository.

    `credential_ref` names an externally stored OAuth token (e.g. a
    Secrets Manager secret name). There is no default credential.
    """
    if credential_ref is None or not credential_ref.strip():
        raise MissingCredentialError(
            f"Source action '{action_name}' needs a credential reference for "
            f"{repo_owner}/{repo_name}"
        )

    return Action(
        name=action_name,
        kind=ActionKind.SOURCE,
        output_artifact=Artifact(name=output_name),
        configuration={
            "owner": _require(repo_owner, "Repository owner"),
            "repo": _require(repo_name, "Repository name"),
            "branch": _require(branch, "Branch"),
            "credential_ref": credential_ref,
        },
    )


def define_build_action(
    project: BuildProject,
    input_artifact: Optional[Artifact],
    action_name: str = "ImageBuild",
    output_name: str = "BuildOutput",
) -> Tuple[Action, Artifact]:
    if input_artifact is None:
        raise PipelineValidationError(f"Build action '{action_name}' needs an input artifact")

    output = Artifact(name=output_name)
    action = Action(
        name=action_name,
        kind=ActionKind.BUILD,
        input_artifact=input_artifact,
        output_artifact=output,
        configuration={"project": project.name},
    )
    return action, output


def define_deploy_action(
    service: ServiceRef,
    input_artifact: Optional[Artifact],
    action_name: str = "EcsDeploy",
) -> Action:
    if input_artifact is None:
        raise PipelineValidationError(f"Deploy action '{action_name}' needs an input artifact")

    return Action(
        name=action_name,
        kind=ActionKind.DEPLOY,
        input_artifact=input_artifact,
        configuration={
            "cluster": service.cluster_name,
            "service": service.service_name,
            "container": service.container_name,
        },
    )


def standard_stages(
    source: Action,
    build: Action,
    deploy: Optional[Action] = None,
) -> List[Tuple[str, List[Action]]]:
    """Source -> Build, plus Deploy when a deploy action is given."""
    stages = [("Source", [source]), ("Build", [build])]
    if deploy is not None:
        stages.append(("Deploy", [deploy]))
    return stages


# ── Assembly ──────────────────────────────────────────────────────────────────

StageInput = Union[PipelineStage, Tuple[str, Sequence[Action]]]


def _fail(message: str) -> NoReturn:
    logger.error(f"Pipeline validation failed: {message}")
    raise PipelineValidationError(message)


def _to_stage(stage: StageInput) -> PipelineStage:
    if isinstance(stage, PipelineStage):
        return stage
    name, actions = stage
    return PipelineStage(name=name, actions=list(actions))


def assemble(stages: Sequence[StageInput], name: str = "pipeline") -> PipelineDefinition:
    """
    Validate an ordered stage list and return the pipeline definition.

    Raises PipelineValidationError if the artifacts do not form a single
    linear chain starting from one input-less action in the first stage.
    """
    resolved = [_to_stage(stage) for stage in stages]

    if not resolved:
        _fail("Pipeline needs at least one stage")

    stage_names = set()
    action_names = set()
    for stage in resolved:
        if not stage.name or not stage.name.strip():
            _fail("Stage name must not be empty")
        if stage.name in stage_names:
            _fail(f"Duplicate stage name '{stage.name}'")
        stage_names.add(stage.name)

        if not stage.actions:
            _fail(f"Stage '{stage.name}' has no actions")
        for action in stage.actions:
            if action.name in action_names:
                _fail(f"Duplicate action name '{action.name}' in stage '{stage.name}'")
            action_names.add(action.name)

    first = resolved[0]
    if len(first.actions) != 1:
        _fail(f"First stage '{first.name}' must contain exactly one action, got {len(first.actions)}")
    if first.actions[0].input_artifact is not None:
        _fail(
            f"First stage '{first.name}' action '{first.actions[0].name}' must not "
            f"consume an artifact"
        )

    produced = set()
    for stage in resolved:
        if len(stage.outputs()) > 1:
            _fail(f"Stage '{stage.name}' produces {len(stage.outputs())} artifacts; at most one is allowed")
        for artifact in stage.outputs():
            if artifact in produced:
                _fail(f"Artifact '{artifact.name}' is produced more than once (stage '{stage.name}')")
            produced.add(artifact)

    consumed = set()
    for previous, stage in zip(resolved, resolved[1:]):
        available = previous.outputs()
        if not available:
            _fail(
                f"Stage '{stage.name}' has no artifact to consume: "
                f"stage '{previous.name}' produces none"
            )
        expected = available[0]

        for action in stage.actions:
            if action.input_artifact is None:
                _fail(f"Action '{action.name}' in stage '{stage.name}' has no input artifact")
            if action.input_artifact != expected:
                _fail(
                    f"Action '{action.name}' in stage '{stage.name}' consumes "
                    f"'{action.input_artifact.name}', expected '{expected.name}' "
                    f"from stage '{previous.name}'"
                )
            if action.input_artifact in consumed:
                _fail(f"Artifact '{action.input_artifact.name}' is consumed more than once")
            consumed.add(action.input_artifact)

    definition = PipelineDefinition(name=name, stages=resolved)
    chain = " -> ".join(
        f"{stage.name}[{', '.join(a.name for a in stage.actions)}]" for stage in definition.stages
    )
    logger.info(f"Assembled pipeline '{name}': {chain}")
    return definition
