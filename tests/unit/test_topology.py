import dataclasses
import json

import pytest

from cicd.errors import ConfigurationError
from cicd.topology import (
    APPROVAL_ACTION,
    BUILD_STAGE,
    PIPELINE_STAGE_ORDER,
    PROD_STAGE,
    SOURCE_STAGE,
    STAGING_STAGE,
    ActionDescriptor,
    SourceTrigger,
    StageDescriptor,
    build_topologies,
    build_topology,
)

TOPIC_ARN = "arn:aws:sns:us-east-1:111111111111:cicd-notifications"


@pytest.fixture
def topology(service, accounts):
    return build_topology(service, SourceTrigger.MASTER, accounts, alerting=TOPIC_ARN)


def test_stage_order(topology):
    assert topology.stage_names == list(PIPELINE_STAGE_ORDER)
    assert topology.stage_names == ["Source", "Build_Packages", "Deploy_STAGING", "Deploy_PROD"]


def test_pipeline_name(topology):
    assert topology.pipeline_name == "acme_master"
    assert topology.service_name == "acme"


def test_source_stage(topology):
    actions = topology.stage(SOURCE_STAGE).actions

    assert [action.action_name for action in actions] == [
        "GitHub_PushToMaster_Services",
        "GitHub_PushToMaster_MVP",
    ]
    assert [action.run_order for action in actions] == [1, 2]
    assert [action.outputs for action in actions] == [
        ("SourceOutputServices",),
        ("SourceOutputMVP",),
    ]
    for action in actions:
        assert action.configuration["owner"] == "acme-org"
        assert action.configuration["branch"] == "master"
        assert action.configuration["oauth_secret"] == "cicd/github-token"
    assert actions[1].configuration["repo"] == "MVP"


def test_build_stage_assumes_dev_deployer_role_in_tools_account(topology):
    actions = topology.stage(BUILD_STAGE).actions

    assert len(actions) == 2
    for action in actions:
        assert action.assumed_role_arn == "arn:aws:iam::111111111111:role/acme-dev-deployer-role"
        assert action.configuration["build_spec"] == "buildspec.tools.yml"
    assert actions[0].outputs == ("StagingPackageServices", "ProdPackageServices")
    assert actions[1].outputs == ("StagingPackageMVP", "ProdPackageMVP")
    assert actions[0].configuration["project_name"] == "acme_master_services_build"
    assert actions[1].configuration["project_name"] == "acme_master_mvp_build"


def test_staging_stage(topology):
    stage = topology.stage(STAGING_STAGE)
    services = stage.action("Deploy_STAGING_Services")
    mvp = stage.action("Deploy_STAGING_MVP")

    assert services.assumed_role_arn == "arn:aws:iam::222222222222:role/acme-staging-deployer-role"
    assert services.inputs == ("SourceOutputServices", "StagingPackageServices")
    assert services.configuration["build_spec"] == "buildspec.staging.yml"
    assert mvp.provider == "S3"
    assert mvp.inputs == ("StagingPackageMVP",)
    assert mvp.configuration["bucket_arn"] == "arn:aws:s3:::acme-staging-web"
    assert "object_key" not in mvp.configuration


def test_approval_runs_after_every_staging_deploy(topology):
    stage = topology.stage(STAGING_STAGE)
    approval = stage.action(APPROVAL_ACTION)
    others = [action for action in stage.actions if action is not approval]

    assert approval.category == "Approval"
    assert approval.run_order > max(action.run_order for action in others)
    assert stage.actions[-1] is approval


def test_prod_stage(topology):
    stage = topology.stage(PROD_STAGE)
    services = stage.action("Deploy_PROD_Services")
    mvp = stage.action("Deploy_PROD_MVP")

    assert services.assumed_role_arn == "arn:aws:iam::333333333333:role/acme-prod-deployer-role"
    assert services.inputs == ("SourceOutputServices", "ProdPackageServices")
    assert mvp.configuration["bucket_arn"] == "arn:aws:s3:::acme-prod-web"
    assert mvp.configuration["object_key"] == "site"
    assert all(action.action_name != APPROVAL_ACTION for action in stage.actions)


def test_deployer_role_arns(topology):
    assert topology.deployer_role_arns == [
        "arn:aws:iam::111111111111:role/acme-dev-deployer-role",
        "arn:aws:iam::222222222222:role/acme-staging-deployer-role",
        "arn:aws:iam::333333333333:role/acme-prod-deployer-role",
    ]


def test_failure_alert(topology):
    alert = topology.alert

    assert alert.rule_name == "acme_master_pipeline_failed_rule"
    assert alert.topic_arn == TOPIC_ARN
    assert alert.event_pattern == {
        "source": ["aws.codepipeline"],
        "detail-type": ["CodePipeline Pipeline Execution State Change"],
        "detail": {"pipeline": ["acme_master"], "state": ["FAILED"]},
    }


def test_no_alert_without_topic(service, accounts):
    assert build_topology(service, SourceTrigger.MASTER, accounts).alert is None


def test_access_permissions_are_carried(topology, service):
    assert topology.access_permissions == service.access_permissions


def test_approvers(service, accounts):
    topology = build_topology(
        service, SourceTrigger.MASTER, accounts, approvers=["a@example.com", "b@example.com"]
    )
    approval = topology.stage(STAGING_STAGE).action(APPROVAL_ACTION)

    assert approval.configuration["notify_emails"] == "a@example.com,b@example.com"


def test_pull_request_trigger(service, accounts):
    topology = build_topology(service, SourceTrigger.PULL_REQUEST, accounts)

    assert topology.pipeline_name == "acme_pr"
    assert topology.stage(SOURCE_STAGE).actions[0].action_name == "GitHub_SubmitPR_Services"
    assert topology.stage(BUILD_STAGE).actions[0].configuration["project_name"] == "acme_pr_services_build"


def test_service_without_mvp(api_only_service, accounts):
    topology = build_topology(api_only_service, SourceTrigger.MASTER, accounts)

    assert topology.stage_names == list(PIPELINE_STAGE_ORDER)
    assert len(topology.stage(SOURCE_STAGE).actions) == 1
    assert len(topology.stage(BUILD_STAGE).actions) == 1
    staging = topology.stage(STAGING_STAGE).actions
    assert [action.action_name for action in staging] == ["Deploy_STAGING_Services", APPROVAL_ACTION]
    assert staging[-1].run_order == 2
    assert [action.action_name for action in topology.stage(PROD_STAGE).actions] == [
        "Deploy_PROD_Services"
    ]


def test_single_digit_accounts(api_only_service):
    service = dataclasses.replace(api_only_service, service_name="acme")
    topology = build_topology(
        service, SourceTrigger.MASTER, {"tools": "1", "staging": "2", "prod": "3"}
    )

    assert len(topology.stages) == 4
    for action in topology.stage(BUILD_STAGE).actions:
        assert action.assumed_role_arn == "arn:aws:iam::1:role/acme-dev-deployer-role"


def test_rebuilding_is_idempotent(service, accounts):
    first = build_topology(service, SourceTrigger.MASTER, accounts, alerting=TOPIC_ARN)
    second = build_topology(service, SourceTrigger.MASTER, accounts, alerting=TOPIC_ARN)

    assert first == second
    assert json.dumps(first.as_dict(), sort_keys=True) == json.dumps(
        second.as_dict(), sort_keys=True
    )


def test_missing_prod_account(service, accounts):
    del accounts["prod"]

    with pytest.raises(ConfigurationError):
        build_topology(service, SourceTrigger.MASTER, accounts)


def test_trigger_must_be_a_source_trigger(service, accounts):
    with pytest.raises(ConfigurationError):
        build_topology(service, "master", accounts)


def test_action_run_order_must_be_positive():
    with pytest.raises(ConfigurationError):
        ActionDescriptor(action_name="Build", category="Build", provider="CodeBuild", run_order=0)


def test_as_dict_orders_actions_by_run_order(topology):
    staging = topology.as_dict()["stages"][2]

    assert staging["name"] == "Deploy_STAGING"
    assert [action["runOrder"] for action in staging["actions"]] == [1, 2, 3]
    assert staging["actions"][0]["roleArn"].endswith(":role/acme-staging-deployer-role")


def test_build_topologies(service, api_only_service, accounts):
    topologies = build_topologies([service, api_only_service], SourceTrigger.MASTER, accounts)

    assert [topology.pipeline_name for topology in topologies] == ["acme_master", "billing_master"]


def test_build_topologies_order_does_not_change_output(service, api_only_service, accounts):
    forward = build_topologies([service, api_only_service], SourceTrigger.MASTER, accounts)
    backward = build_topologies([api_only_service, service], SourceTrigger.MASTER, accounts)

    assert forward == list(reversed(backward))


def test_build_topologies_without_services(accounts):
    assert build_topologies([], SourceTrigger.MASTER, accounts) == []


def test_duplicate_service_names(service, accounts):
    duplicate = dataclasses.replace(service, secret_reference="other/token")

    with pytest.raises(ConfigurationError, match="more than one"):
        build_topologies([service, duplicate], SourceTrigger.MASTER, accounts)


def test_invalid_service_fails_before_any_topology(service, api_only_service, accounts):
    broken = dataclasses.replace(api_only_service, deploy_permissions=())

    with pytest.raises(ConfigurationError):
        build_topologies([service, broken], SourceTrigger.MASTER, accounts)


def test_website_deploys_assume_the_stage_deployer_role(topology):
    staging_mvp = topology.stage(STAGING_STAGE).action("Deploy_STAGING_MVP")
    prod_mvp = topology.stage(PROD_STAGE).action("Deploy_PROD_MVP")

    assert staging_mvp.assumed_role_arn == "arn:aws:iam::222222222222:role/acme-staging-deployer-role"
    assert prod_mvp.assumed_role_arn == "arn:aws:iam::333333333333:role/acme-prod-deployer-role"


def test_as_dict_keeps_declaration_order_for_equal_run_orders():
    stage = StageDescriptor(
        name="Deploy",
        actions=(
            ActionDescriptor(action_name="Late", category="Build", provider="CodeBuild", run_order=2),
            ActionDescriptor(action_name="First", category="Build", provider="CodeBuild", run_order=1),
            ActionDescriptor(action_name="Second", category="Build", provider="CodeBuild", run_order=1),
            ActionDescriptor(action_name="Third", category="Build", provider="CodeBuild", run_order=1),
        ),
    )

    assert [action["name"] for action in stage.as_dict()["actions"]] == [
        "First",
        "Second",
        "Third",
        "Late",
    ]


def test_action_run_order_is_not_a_bool():
    with pytest.raises(ConfigurationError):
        ActionDescriptor(action_name="Build", category="Build", provider="CodeBuild", run_order=True)


def test_action_configuration_is_read_only(topology):
    action = topology.stage(BUILD_STAGE).action("Build_Services_Packages")

    with pytest.raises(TypeError):
        action.configuration["build_spec"] = "buildspec.yml"
    assert action.configuration["build_spec"] == "buildspec.tools.yml"


def test_action_configuration_is_copied():
    configuration = {"project_name": "acme_master_services_build"}
    action = ActionDescriptor(
        action_name="Build",
        category="Build",
        provider="CodeBuild",
        run_order=1,
        configuration=configuration,
    )
    configuration["project_name"] = "other"

    assert action.configuration["project_name"] == "acme_master_services_build"
