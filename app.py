#!/usr/bin/env python3

import logging
import os

import aws_cdk as cdk
from aws_cdk import Aspects

from cicd.config import CicdConfig
from cicd.errors import provisioning_errors
from cicd.service_definition import check_accounts
from cicd.topology import DEPLOYER_STAGES
from stacks.cicd_pipelines_stack import CicdPipelinesStack
from stacks.cross_account_role_stack import CrossAccountRoleStack

logging.basicConfig(
    level=os.environ.get("CICD_LOG_LEVEL", "INFO").upper(),
    format="%(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("app")

app = cdk.App()

# services and accounts come from the context, see cdk.json
config = CicdConfig.from_context(app.node)
check_accounts(config.accounts)

deploy_region = os.environ.get("CDK_DEFAULT_REGION")
region = app.node.try_get_context("region")
if region:
    deploy_region = region

with provisioning_errors():
    # create in the tools account
    CicdPipelinesStack(
        app,
        "cicd-pipelines",
        config=config,
        stack_name="cicd-pipelines",
        env=cdk.Environment(account=config.accounts["tools"], region=deploy_region),
    )

    # one stack of deployer roles in every account the pipelines deploy to
    for stage, account_key in DEPLOYER_STAGES:
        CrossAccountRoleStack(
            app,
            "cicd-deployer-roles-" + stage,
            services=config.services,
            stage=stage,
            accounts=config.accounts,
            env=cdk.Environment(account=config.accounts[account_key], region=deploy_region),
        )

    Aspects.of(app).add(cdk.Tag("managed-by", "cicd-pipelines"))
    tags = app.node.try_get_context("tags") or {}
    for tag_key, tag_value in tags.items():
        Aspects.of(app).add(cdk.Tag(tag_key, tag_value))

    logger.info("Synthesising %d service pipeline(s)", len(config.services) * len(config.triggers))
    app.synth()
