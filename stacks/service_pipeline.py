import logging

import constructs
import aws_cdk as cdk
from aws_cdk import (
    aws_codebuild as codebuild,
    aws_codepipeline as codepipeline,
    aws_codepipeline_actions as codepipeline_actions,
    aws_events as events,
    aws_events_targets as targets,
    aws_iam as iam,
    aws_logs as logs,
    aws_s3 as s3,
    aws_sns as sns,
)

from cicd.errors import ConfigurationError
from cicd.topology import ActionDescriptor, FailureAlert, PipelineTopology

from stacks.iam_statements import to_policy_statement

logger = logging.getLogger(__name__)


class ServicePipeline(constructs.Construct):
    """Creates the CodePipeline described by a single PipelineTopology."""

    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        topology: PipelineTopology,
        alerts_topic: sns.ITopic = None,
        **kwargs
    ) -> None:
        super().__init__(scope, id, **kwargs)

        if topology is None:
            raise ConfigurationError("A pipeline topology is needed to create a pipeline")

        self.topology = topology
        self.projects = {}
        self.alert = None
        self._artifacts = {}

        # cross account keys let the deploy actions read artifacts from other accounts
        self.pipeline = codepipeline.Pipeline(
            self,
            "Pipeline",
            pipeline_name=topology.pipeline_name,
            cross_account_keys=True,
            restart_execution_on_update=True,
        )

        # extra permissions the pipeline role needs, e.g. to reach shared buckets
        for grant in topology.access_permissions:
            self.pipeline.add_to_role_policy(to_policy_statement(grant))

        for stage in topology.stages:
            self.pipeline.add_stage(
                stage_name=stage.name,
                actions=[self._create_action(action) for action in stage.actions],
            )

        if topology.alert:
            self.alert = PipelineFailedAlert(
                self,
                "pipeline-failed-alert",
                alert=topology.alert,
                alerts_topic=alerts_topic,
            )

        logger.info(
            "Pipeline %s: %s", topology.pipeline_name, " -> ".join(topology.stage_names)
        )

    def artifact(self, name: str) -> codepipeline.Artifact:
        if name not in self._artifacts:
            self._artifacts[name] = codepipeline.Artifact(name)
        return self._artifacts[name]

    def _create_action(self, action: ActionDescriptor) -> codepipeline.IAction:
        if action.provider == "GitHub":
            return self._source_action(action)
        if action.provider == "CodeBuild":
            return self._codebuild_action(action)
        if action.provider == "S3":
            return self._s3_deploy_action(action)
        if action.provider == "Manual":
            return self._approval_action(action)
        raise ConfigurationError(
            "Action " + action.action_name + " has an unknown provider " + action.provider
        )

    def _source_action(self, action: ActionDescriptor):
        config = action.configuration
        return codepipeline_actions.GitHubSourceAction(
            action_name=action.action_name,
            owner=config["owner"],
            repo=config["repo"],
            branch=config["branch"],
            oauth_token=cdk.SecretValue.secrets_manager(config["oauth_secret"]),
            trigger=codepipeline_actions.GitHubTrigger.WEBHOOK,
            output=self.artifact(action.outputs[0]),
            run_order=action.run_order,
        )

    def _codebuild_action(self, action: ActionDescriptor):
        config = action.configuration
        project = ServiceCodebuildProject(
            self,
            action.action_name,
            project_name=config["project_name"],
            build_spec=config.get("build_spec"),
            deployer_role_arn=action.assumed_role_arn,
            environment_variables={
                "SERVICE_NAME": self.topology.service_name,
                "PIPELINE_NAME": self.topology.pipeline_name,
            },
        )
        self.projects[action.action_name] = project
        return codepipeline_actions.CodeBuildAction(
            action_name=action.action_name,
            project=project.project,
            input=self.artifact(action.inputs[0]),
            extra_inputs=[self.artifact(name) for name in action.inputs[1:]] or None,
            outputs=[self.artifact(name) for name in action.outputs] or None,
            run_order=action.run_order,
        )

    def _s3_deploy_action(self, action: ActionDescriptor):
        config = action.configuration
        deploy_bucket = s3.Bucket.from_bucket_arn(
            self, action.action_name + "Bucket", config["bucket_arn"]
        )
        deployer_role = None
        if action.assumed_role_arn:
            deployer_role = iam.Role.from_role_arn(
                self, action.action_name + "Role", role_arn=action.assumed_role_arn
            )
        return codepipeline_actions.S3DeployAction(
            action_name=action.action_name,
            bucket=deploy_bucket,
            input=self.artifact(action.inputs[0]),
            extract=config.get("extract", "true") == "true",
            object_key=config.get("object_key"),
            role=deployer_role,
            run_order=action.run_order,
        )

    def _approval_action(self, action: ActionDescriptor):
        notify_emails = action.configuration.get("notify_emails")
        return codepipeline_actions.ManualApprovalAction(
            action_name=action.action_name,
            notify_emails=notify_emails.split(",") if notify_emails else None,
            run_order=action.run_order,
        )


class ServiceCodebuildProject(constructs.Construct):
    """A CodeBuild project whose role may only assume the service's deployer role."""

    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        project_name: str,
        deployer_role_arn: str,
        build_spec: str = None,
        environment_variables: dict = None,
        **kwargs
    ) -> None:
        super().__init__(scope, id, **kwargs)

        if not deployer_role_arn:
            raise ConfigurationError(
                "The deployer role for " + project_name + " needs to be provided"
            )

        self.build_role = ServiceBuildRole(
            self, "project-role", deployer_role_arn=deployer_role_arn
        ).build_role

        variables = {"DEPLOYER_ROLE_ARN": deployer_role_arn}
        variables.update(environment_variables or {})

        self.project = codebuild.PipelineProject(
            self,
            "build-project",
            project_name=project_name,
            timeout=cdk.Duration.minutes(10),
            build_spec=codebuild.BuildSpec.from_source_filename(
                build_spec or "buildspec.yml"
            ),
            environment=codebuild.BuildEnvironment(
                build_image=codebuild.LinuxBuildImage.STANDARD_7_0,
            ),
            environment_variables={
                name: codebuild.BuildEnvironmentVariable(value=value)
                for name, value in sorted(variables.items())
            },
            logging=codebuild.LoggingOptions(
                cloud_watch=codebuild.CloudWatchLoggingOptions(
                    enabled=True,
                    log_group=logs.LogGroup(
                        self,
                        "ProjectLogs",
                        retention=logs.RetentionDays.ONE_MONTH,
                        removal_policy=cdk.RemovalPolicy.DESTROY,
                    ),
                )
            ),
            role=self.build_role,
        )


class ServiceBuildRole(constructs.Construct):
    def __init__(
        self, scope: constructs.Construct, id: str, deployer_role_arn: str, **kwargs
    ) -> None:
        super().__init__(scope, id, **kwargs)

        self.build_role = iam.Role(
            self,
            "Default",
            assumed_by=iam.ServicePrincipal("codebuild.amazonaws.com"),
        )

        # allow CodeBuild to assume the deployer role, nothing more
        self.policy = iam.Policy(
            self,
            "deployer-policy",
            statements=[
                iam.PolicyStatement(
                    actions=["sts:AssumeRole"],
                    effect=iam.Effect.ALLOW,
                    resources=[deployer_role_arn],
                )
            ],
        )
        self.policy.attach_to_role(self.build_role)


class PipelineFailedAlert(constructs.Construct):
    """Publishes to the alerts topic when a pipeline execution fails."""

    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        alert: FailureAlert,
        alerts_topic: sns.ITopic = None,
        **kwargs
    ) -> None:
        super().__init__(scope, id, **kwargs)

        if alerts_topic is None:
            alerts_topic = sns.Topic.from_topic_arn(self, "AlertsTopic", alert.topic_arn)

        pattern = alert.event_pattern
        self.rule = events.Rule(
            self,
            "pipeline_failed_rule",
            rule_name=alert.rule_name,
            event_pattern=events.EventPattern(
                source=pattern["source"],
                detail_type=pattern["detail-type"],
                detail=pattern["detail"],
            ),
            targets=[targets.SnsTopic(alerts_topic)],
        )
