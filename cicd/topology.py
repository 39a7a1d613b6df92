import enum
import logging
import types
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from cicd.errors import ConfigurationError
from cicd.naming import role_arn
from cicd.service_definition import (
    PermissionGrant,
    ServiceDefinition,
    StageAccountMap,
    ValidatedService,
    check_accounts,
    split_bucket_locator,
    validate_service,
)

logger = logging.getLogger(__name__)


class SourceTrigger(enum.Enum):
    MASTER = "master"  # merge to master
    PULL_REQUEST = "pr"  # create/update of a PR on a feature branch


SOURCE_STAGE = "Source"
BUILD_STAGE = "Build_Packages"
STAGING_STAGE = "Deploy_STAGING"
PROD_STAGE = "Deploy_PROD"
PIPELINE_STAGE_ORDER = (SOURCE_STAGE, BUILD_STAGE, STAGING_STAGE, PROD_STAGE)

# (deployer role stage, key of the account the role lives in)
DEPLOYER_STAGES = (("dev", "tools"), ("staging", "staging"), ("prod", "prod"))

APPROVAL_ACTION = "Approve_PROD"

FAILED_EVENT_SOURCE = "aws.codepipeline"
FAILED_EVENT_DETAIL_TYPE = "CodePipeline Pipeline Execution State Change"


@dataclass(frozen=True)
class ActionDescriptor:
    action_name: str
    category: str
    provider: str
    run_order: int
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()
    assumed_role_arn: Optional[str] = None
    configuration: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # bool is an int subclass but never a run order
        if (
            isinstance(self.run_order, bool)
            or not isinstance(self.run_order, int)
            or self.run_order < 1
        ):
            raise ConfigurationError(
                "Action " + self.action_name + " needs a positive run order"
            )
        object.__setattr__(
            self, "configuration", types.MappingProxyType(dict(self.configuration))
        )

    def as_dict(self) -> dict:
        return {
            "name": self.action_name,
            "category": self.category,
            "provider": self.provider,
            "runOrder": self.run_order,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "roleArn": self.assumed_role_arn,
            "configuration": dict(sorted(self.configuration.items())),
        }


@dataclass(frozen=True)
class StageDescriptor:
    name: str
    actions: Tuple[ActionDescriptor, ...]

    def action(self, action_name: str) -> ActionDescriptor:
        for action in self.actions:
            if action.action_name == action_name:
                return action
        raise KeyError(action_name)

    def as_dict(self) -> dict:
        # ties in run order keep declaration order
        ordered = sorted(self.actions, key=lambda action: action.run_order)
        return {"name": self.name, "actions": [action.as_dict() for action in ordered]}


@dataclass(frozen=True)
class FailureAlert:
    """Sends a notification when any execution of the pipeline ends as FAILED."""

    rule_name: str
    topic_arn: str
    pipeline_name: str

    @property
    def event_pattern(self) -> dict:
        return {
            "source": [FAILED_EVENT_SOURCE],
            "detail-type": [FAILED_EVENT_DETAIL_TYPE],
            "detail": {"pipeline": [self.pipeline_name], "state": ["FAILED"]},
        }

    def as_dict(self) -> dict:
        return {
            "ruleName": self.rule_name,
            "topicArn": self.topic_arn,
            "eventPattern": self.event_pattern,
        }


@dataclass(frozen=True)
class PipelineTopology:
    pipeline_name: str
    service_name: str
    trigger: SourceTrigger
    stages: Tuple[StageDescriptor, ...]
    alert: Optional[FailureAlert] = None
    access_permissions: Tuple[PermissionGrant, ...] = ()

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def stage(self, name: str) -> StageDescriptor:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def deployer_role_arns(self) -> List[str]:
        arns = []
        for stage in self.stages:
            for action in stage.actions:
                if action.assumed_role_arn and action.assumed_role_arn not in arns:
                    arns.append(action.assumed_role_arn)
        return arns

    def as_dict(self) -> dict:
        return {
            "pipelineName": self.pipeline_name,
            "serviceName": self.service_name,
            "trigger": self.trigger.value,
            "stages": [stage.as_dict() for stage in self.stages],
            "alert": self.alert.as_dict() if self.alert else None,
            "accessPermissions": [grant.to_dict() for grant in self.access_permissions],
        }


def pipeline_name_for(service_name: str, trigger: SourceTrigger) -> str:
    return service_name + "_" + trigger.value


def _source_action_name(trigger: SourceTrigger, suffix: str) -> str:
    if trigger == SourceTrigger.PULL_REQUEST:
        return "GitHub_SubmitPR_" + suffix
    return "GitHub_PushToMaster_" + suffix


def _bundles(service: ServiceDefinition) -> List[Tuple[str, str]]:
    """(suffix, repository) for every source the service is built from, in declaration order."""
    bundles = [("Services", service.source.repo_service)]
    if service.has_mvp:
        bundles.append(("MVP", service.source.repo_mvp))
    return bundles


def _source_stage(service: ServiceDefinition, trigger: SourceTrigger) -> StageDescriptor:
    actions = []
    for run_order, (suffix, repo) in enumerate(_bundles(service), start=1):
        actions.append(
            ActionDescriptor(
                action_name=_source_action_name(trigger, suffix),
                category="Source",
                provider="GitHub",
                run_order=run_order,
                outputs=("SourceOutput" + suffix,),
                configuration={
                    "owner": service.source.owner,
                    "repo": repo,
                    "branch": service.source.branch,
                    "oauth_secret": service.secret_reference,
                },
            )
        )
    return StageDescriptor(name=SOURCE_STAGE, actions=tuple(actions))


def _build_stage(validated: ValidatedService, pipeline_name: str) -> StageDescriptor:
    service = validated.service
    deployer_role_arn = role_arn(service.service_name, "dev", validated.account_for("tools"))
    actions = []
    for run_order, (suffix, _repo) in enumerate(_bundles(service), start=1):
        actions.append(
            ActionDescriptor(
                action_name="Build_" + suffix + "_Packages",
                category="Build",
                provider="CodeBuild",
                run_order=run_order,
                inputs=("SourceOutput" + suffix,),
                outputs=("StagingPackage" + suffix, "ProdPackage" + suffix),
                assumed_role_arn=deployer_role_arn,
                configuration={
                    "project_name": pipeline_name + "_" + suffix.lower() + "_build",
                    "build_spec": "buildspec.tools.yml",
                },
            )
        )
    return StageDescriptor(name=BUILD_STAGE, actions=tuple(actions))


def _deploy_actions(
    validated: ValidatedService, pipeline_name: str, stage: str
) -> List[ActionDescriptor]:
    service = validated.service
    label = stage.upper()
    package = stage.capitalize() + "Package"
    deployer_role_arn = role_arn(service.service_name, stage, validated.account_for(stage))
    actions = [
        ActionDescriptor(
            action_name="Deploy_" + label + "_Services",
            category="Build",
            provider="CodeBuild",
            run_order=1,
            inputs=("SourceOutputServices", package + "Services"),
            assumed_role_arn=deployer_role_arn,
            configuration={
                "project_name": pipeline_name + "_services_" + stage,
                "build_spec": "buildspec." + stage + ".yml",
            },
        )
    ]
    if service.has_mvp:
        bucket_arn, key_prefix = split_bucket_locator(
            service.target_storage.for_stage(stage)
        )
        configuration = {"bucket_arn": bucket_arn, "extract": "true"}
        if key_prefix:
            configuration["object_key"] = key_prefix
        actions.append(
            ActionDescriptor(
                action_name="Deploy_" + label + "_MVP",
                category="Deploy",
                provider="S3",
                run_order=2,
                inputs=(package + "MVP",),
                # the bucket lives in the stage account, so the deployer role writes to it
                assumed_role_arn=deployer_role_arn,
                configuration=configuration,
            )
        )
    return actions


def _staging_stage(
    validated: ValidatedService, pipeline_name: str, approvers: Sequence[str]
) -> StageDescriptor:
    actions = _deploy_actions(validated, pipeline_name, "staging")
    configuration = {}
    if approvers:
        configuration["notify_emails"] = ",".join(approvers)
    # production only starts once someone signs off on staging
    actions.append(
        ActionDescriptor(
            action_name=APPROVAL_ACTION,
            category="Approval",
            provider="Manual",
            run_order=max(action.run_order for action in actions) + 1,
            configuration=configuration,
        )
    )
    return StageDescriptor(name=STAGING_STAGE, actions=tuple(actions))


def _prod_stage(validated: ValidatedService, pipeline_name: str) -> StageDescriptor:
    return StageDescriptor(
        name=PROD_STAGE, actions=tuple(_deploy_actions(validated, pipeline_name, "prod"))
    )


def _derive(
    validated: ValidatedService,
    trigger: SourceTrigger,
    alerting: Optional[str],
    approvers: Sequence[str],
) -> PipelineTopology:
    service = validated.service
    pipeline_name = pipeline_name_for(service.service_name, trigger)
    logger.debug("Deriving topology for pipeline %s", pipeline_name)

    stages = (
        _source_stage(service, trigger),
        _build_stage(validated, pipeline_name),
        _staging_stage(validated, pipeline_name, approvers),
        _prod_stage(validated, pipeline_name),
    )

    alert = None
    if alerting:
        alert = FailureAlert(
            rule_name=pipeline_name + "_pipeline_failed_rule",
            topic_arn=alerting,
            pipeline_name=pipeline_name,
        )

    return PipelineTopology(
        pipeline_name=pipeline_name,
        service_name=service.service_name,
        trigger=trigger,
        stages=stages,
        alert=alert,
        access_permissions=tuple(service.access_permissions),
    )


def _check_trigger(trigger) -> SourceTrigger:
    if not isinstance(trigger, SourceTrigger):
        raise ConfigurationError("Unknown source trigger " + repr(trigger))
    return trigger


def build_topology(
    service: ServiceDefinition,
    trigger: SourceTrigger,
    accounts: StageAccountMap,
    alerting: Optional[str] = None,
    approvers: Sequence[str] = (),
) -> PipelineTopology:
    """Derive the Source -> Build -> Staging (+approval) -> Prod stages of one pipeline.

    ``alerting`` is the ARN of the topic failed executions are reported to.
    The service is validated before anything is derived.
    """
    _check_trigger(trigger)
    validated = validate_service(service, accounts)
    return _derive(validated, trigger, alerting, tuple(approvers))


def build_topologies(
    services: Iterable[ServiceDefinition],
    trigger: SourceTrigger,
    accounts: StageAccountMap,
    alerting: Optional[str] = None,
    approvers: Sequence[str] = (),
) -> List[PipelineTopology]:
    _check_trigger(trigger)
    services = list(services)
    if not services:
        return []

    check_accounts(accounts)
    validated = []
    seen = set()
    for service in services:
        item = validate_service(service, accounts)
        if item.service_name in seen:
            raise ConfigurationError(
                "The service name " + item.service_name + " is used by more than one service"
            )
        seen.add(item.service_name)
        validated.append(item)

    return [_derive(item, trigger, alerting, tuple(approvers)) for item in validated]
