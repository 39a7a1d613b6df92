from dataclasses import dataclass
from typing import Iterable, List, Tuple

from cicd.errors import ConfigurationError
from cicd.naming import check_account_id, policy_name, role_name
from cicd.service_definition import (
    PermissionGrant,
    ServiceDefinition,
    StageAccountMap,
    check_accounts,
)

# the deployer hands roles it creates over to the services it deploys
PASS_ROLE_GRANT = PermissionGrant.allow(["iam:PassRole"])


@dataclass(frozen=True)
class RoleDescriptor:
    role_name: str
    policy_name: str
    trusted_account_id: str
    grants: Tuple[PermissionGrant, ...]


def build_trust_descriptor(
    service_name: str,
    stage: str,
    deploying_account_id: str,
    deploy_permissions: Iterable[PermissionGrant],
) -> RoleDescriptor:
    """Describe the deployer role ``deploying_account_id`` may assume for ``stage``."""
    grants = [PASS_ROLE_GRANT]
    for grant in deploy_permissions:
        if grant not in grants:
            grants.append(grant)
    return RoleDescriptor(
        role_name=role_name(service_name, stage),
        policy_name=policy_name(service_name, stage),
        trusted_account_id=check_account_id(deploying_account_id),
        grants=tuple(grants),
    )


def build_trust_descriptors(
    services: Iterable[ServiceDefinition], stage: str, accounts: StageAccountMap
) -> List[RoleDescriptor]:
    check_accounts(accounts, ["tools"])
    descriptors = []
    seen = set()
    for service in services:
        if service.service_name in seen:
            raise ConfigurationError(
                "The service name " + service.service_name + " is used by more than one service"
            )
        seen.add(service.service_name)
        descriptors.append(
            build_trust_descriptor(
                service.service_name, stage, accounts["tools"], service.deploy_permissions
            )
        )
    return descriptors
