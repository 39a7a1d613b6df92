import logging

import constructs
import aws_cdk as cdk
from aws_cdk import (
    aws_sns as sns,
    aws_sns_subscriptions as subscriptions,
)

from cicd.config import CicdConfig
from cicd.errors import ConfigurationError
from cicd.topology import build_topologies

from stacks.service_pipeline import ServicePipeline

logger = logging.getLogger(__name__)

####################################################################################################
# This stack needs to be created in the tools account, the one CodePipeline and CodeBuild run in
####################################################################################################


class CicdPipelinesStack(cdk.Stack):
    """Groups the pipelines of every configured service into one CloudFormation stack."""

    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        config: CicdConfig,
        **kwargs
    ) -> None:
        super().__init__(scope, id, **kwargs)

        if config is None:
            raise ConfigurationError(
                "The CICD configuration needs to be provided in the `services` and `deployment_target_accounts` context values"
            )

        self.alerts_topic = sns.Topic(
            self,
            "cicd-notifications",
            topic_name="cicd-notifications",
            display_name="CICD pipeline failed",
        )
        for email in config.alert_emails:
            self.alerts_topic.add_subscription(subscriptions.EmailSubscription(email))

        # derive every topology before creating any pipeline, so a bad service fails the whole synth
        topologies = []
        for trigger in config.triggers:
            topologies.extend(
                build_topologies(
                    config.services,
                    trigger,
                    config.accounts,
                    alerting=self.alerts_topic.topic_arn,
                    approvers=config.approvers,
                )
            )

        self.pipelines = []
        for topology in topologies:
            self.pipelines.append(
                ServicePipeline(
                    self,
                    topology.pipeline_name + "_pipeline",
                    topology=topology,
                    alerts_topic=self.alerts_topic,
                )
            )

        if not self.pipelines:
            logger.warning("No services are configured, no pipelines will be created")

        cdk.CfnOutput(
            self,
            "AlertsTopicArn",
            description="Pipeline failure notifications are published to this topic.",
            value=self.alerts_topic.topic_arn,
            export_name=self.stack_name + ":AlertsTopicArn",
        )
