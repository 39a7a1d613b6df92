import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from cicd.errors import ConfigurationError
from cicd.service_definition import (
    PermissionGrant,
    ServiceDefinition,
    SourceLocations,
    StorageLocations,
)
from cicd.topology import SourceTrigger

logger = logging.getLogger(__name__)


def _split(value) -> Tuple[str, ...]:
    """Accepts a list or the comma separated form given with ``-c key=a,b``."""
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(item.strip() for item in value if item and item.strip())


def parse_trigger(value: str) -> SourceTrigger:
    try:
        return SourceTrigger(value)
    except ValueError:
        raise ConfigurationError(
            "Unknown trigger "
            + repr(value)
            + ", expected one of "
            + ", ".join(trigger.value for trigger in SourceTrigger)
        ) from None


def load_accounts(raw: Optional[Mapping]) -> Dict[str, str]:
    """Read ``deployment_target_accounts``: ``{stage: id}`` or ``{stage: {"account_id": id}}``."""
    if not raw:
        raise ConfigurationError(
            "The deployment target accounts need to be provided as the `deployment_target_accounts` context value"
        )
    if not isinstance(raw, Mapping):
        raise ConfigurationError("`deployment_target_accounts` must be a mapping of stage to account")

    accounts = {}
    for stage, value in raw.items():
        if isinstance(value, Mapping):
            value = value.get("account_id")
        if value is None:
            raise ConfigurationError("No account_id given for the " + repr(stage) + " stage")
        accounts[stage] = str(value)
    return accounts


def _grants(raw, key: str, service_name: str) -> Tuple[PermissionGrant, ...]:
    if not raw:
        return ()
    if not isinstance(raw, list) or not all(isinstance(statement, Mapping) for statement in raw):
        raise ConfigurationError(
            key
            + " of "
            + str(service_name)
            + " must be a list of statements like {\"actions\": [...], \"resources\": [...]}"
        )
    return tuple(PermissionGrant.from_dict(statement) for statement in raw)


def _triggers(raw) -> Tuple[SourceTrigger, ...]:
    return tuple(parse_trigger(trigger) for trigger in _split(raw) or ("master",))


def load_service(raw: Mapping) -> ServiceDefinition:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Each entry of `services` must be a mapping")

    service_name = raw.get("service_name")
    if not service_name:
        raise ConfigurationError("Each entry of `services` needs a service_name")
    if not isinstance(service_name, str):
        raise ConfigurationError(
            "The service_name " + repr(service_name) + " in `services` must be a string"
        )

    target_storage = None
    if raw.get("s3_deploy_bucket_staging_arn") or raw.get("s3_deploy_bucket_prod_arn"):
        target_storage = StorageLocations(
            staging=raw.get("s3_deploy_bucket_staging_arn", ""),
            prod=raw.get("s3_deploy_bucket_prod_arn", ""),
        )

    return ServiceDefinition(
        service_name=service_name,
        source=SourceLocations(
            owner=raw.get("github_owner"),
            repo_service=raw.get("github_repo_service"),
            repo_mvp=raw.get("github_repo_mvp") or None,
            branch=raw.get("github_branch", "master"),
        ),
        secret_reference=raw.get("github_token_secret"),
        deploy_permissions=_grants(raw.get("deploy_permissions"), "deploy_permissions", service_name),
        access_permissions=_grants(raw.get("access_permissions"), "access_permissions", service_name),
        target_storage=target_storage,
    )


def load_services(raw) -> List[ServiceDefinition]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError("`services` must be a list of service definitions")
    return [load_service(item) for item in raw]


@dataclass(frozen=True)
class CicdConfig:
    accounts: Mapping[str, str]
    services: Tuple[ServiceDefinition, ...]
    triggers: Tuple[SourceTrigger, ...] = (SourceTrigger.MASTER,)
    approvers: Tuple[str, ...] = ()
    alert_emails: Tuple[str, ...] = ()

    def __post_init__(self):
        # each trigger names its own pipeline, a repeat would create it twice
        seen = set()
        for trigger in self.triggers:
            if trigger in seen:
                raise ConfigurationError(
                    "The trigger "
                    + repr(getattr(trigger, "value", trigger))
                    + " is listed more than once in `triggers`"
                )
            seen.add(trigger)

    @classmethod
    def from_context(cls, node) -> "CicdConfig":
        """Build the configuration from the CDK context (cdk.json or ``-c key=value``)."""
        config = cls(
            accounts=load_accounts(node.try_get_context("deployment_target_accounts")),
            services=tuple(load_services(node.try_get_context("services"))),
            triggers=_triggers(node.try_get_context("triggers")),
            approvers=_split(node.try_get_context("approvers")),
            alert_emails=_split(node.try_get_context("alert_emails")),
        )
        logger.info(
            "Loaded %d service(s) for stages %s",
            len(config.services),
            ", ".join(sorted(config.accounts)),
        )
        return config
