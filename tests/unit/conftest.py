import pytest

from cicd.service_definition import (
    PermissionGrant,
    ServiceDefinition,
    SourceLocations,
    StorageLocations,
)


@pytest.fixture
def accounts():
    return {"tools": "111111111111", "staging": "222222222222", "prod": "333333333333"}


@pytest.fixture
def deploy_grant():
    return PermissionGrant.allow(["cloudformation:*", "lambda:*"])


@pytest.fixture
def service(deploy_grant):
    """A service with an API repo and a website (MVP) repo deployed to S3."""
    return ServiceDefinition(
        service_name="acme",
        source=SourceLocations(owner="acme-org", repo_service="Services", repo_mvp="MVP"),
        secret_reference="cicd/github-token",
        deploy_permissions=(deploy_grant,),
        access_permissions=(
            PermissionGrant.allow(
                ["s3:PutObject*"],
                ["arn:aws:s3:::acme-staging-web/*", "arn:aws:s3:::acme-prod-web/*"],
            ),
        ),
        target_storage=StorageLocations(
            staging="arn:aws:s3:::acme-staging-web",
            prod="arn:aws:s3:::acme-prod-web/site",
        ),
    )


@pytest.fixture
def api_only_service(deploy_grant):
    return ServiceDefinition(
        service_name="billing",
        source=SourceLocations(owner="acme-org", repo_service="Billing"),
        secret_reference="cicd/github-token",
        deploy_permissions=(deploy_grant,),
    )
