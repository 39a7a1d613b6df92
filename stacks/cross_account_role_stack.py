import logging
from typing import Iterable, Mapping

import constructs
import aws_cdk as cdk
from aws_cdk import aws_iam as iam

from cicd.errors import ConfigurationError
from cicd.service_definition import ServiceDefinition
from cicd.trust import build_trust_descriptors

from stacks.iam_statements import to_policy_statement

logger = logging.getLogger(__name__)

####################################################################################################
# This stack needs to be created in the account the pipeline deploys the stage to
####################################################################################################


class CrossAccountRoleStack(cdk.Stack):
    def __init__(
        self,
        scope: constructs.Construct,
        id: str,
        services: Iterable[ServiceDefinition],
        stage: str,
        accounts: Mapping[str, str],
        **kwargs
    ) -> None:
        super().__init__(scope, id, **kwargs)

        if not stage:
            raise ConfigurationError(
                "The stage the deployer roles are created for needs to be provided"
            )

        self.roles = {}

        for descriptor in build_trust_descriptors(services, stage, accounts):
            # allow the deployer role to be assumed by the tools account
            deployer_role = iam.Role(
                self,
                descriptor.role_name,
                role_name=descriptor.role_name,
                assumed_by=iam.AccountPrincipal(descriptor.trusted_account_id),
            )
            deployer_policy = iam.Policy(
                self,
                descriptor.policy_name,
                policy_name=descriptor.policy_name,
                statements=[to_policy_statement(grant) for grant in descriptor.grants],
            )
            deployer_policy.attach_to_role(deployer_role)
            self.roles[descriptor.role_name] = deployer_role

            logger.info(
                "Deployer role %s trusts account %s",
                descriptor.role_name,
                descriptor.trusted_account_id,
            )

            cdk.CfnOutput(
                self,
                descriptor.role_name + "-arn",
                description="This role is assumed by the pipeline's CodeBuild projects to deploy to the "
                + stage
                + " stage.",
                value=deployer_role.role_arn,
            )
