import logging
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple

from cicd.errors import ConfigurationError, InvalidIdentifierError
from cicd.naming import check_account_id, check_identifier, role_name

logger = logging.getLogger(__name__)

# stages the pipeline topology deploys through, each needs an account
REQUIRED_STAGES = ("tools", "staging", "prod")

# keeps every derived CodeBuild project, pipeline, rule and role name inside provider limits
SERVICE_NAME_MAX_LENGTH = 32
SERVICE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

S3_LOCATOR_PATTERN = re.compile(
    r"^arn:(?P<partition>[a-z-]+):s3:::(?P<bucket>[a-z0-9][a-z0-9.-]{1,61}[a-z0-9])(?:/(?P<prefix>.+))?$"
)

EFFECTS = ("Allow", "Deny")

StageAccountMap = Mapping[str, str]


@dataclass(frozen=True)
class PermissionGrant:
    """An IAM policy statement as an immutable value."""

    effect: str
    actions: frozenset
    resources: frozenset

    @classmethod
    def allow(cls, actions: Iterable[str], resources: Iterable[str] = ("*",)):
        return cls(effect="Allow", actions=frozenset(actions), resources=frozenset(resources))

    @classmethod
    def from_dict(cls, raw: Mapping) -> "PermissionGrant":
        actions = raw.get("actions") or []
        resources = raw.get("resources") or ["*"]
        if isinstance(actions, str):
            actions = [actions]
        if isinstance(resources, str):
            resources = [resources]
        return cls(
            effect=raw.get("effect", "Allow"),
            actions=frozenset(actions),
            resources=frozenset(resources),
        )

    def to_dict(self) -> dict:
        return {
            "effect": self.effect,
            "actions": sorted(self.actions),
            "resources": sorted(self.resources),
        }


@dataclass(frozen=True)
class SourceLocations:
    owner: str
    repo_service: str
    repo_mvp: Optional[str] = None
    branch: str = "master"


@dataclass(frozen=True)
class StorageLocations:
    """S3 locators the MVP/website bundle is deployed to, ``arn:aws:s3:::bucket[/prefix]``."""

    staging: str
    prod: str

    def for_stage(self, stage: str) -> str:
        if stage == "staging":
            return self.staging
        if stage == "prod":
            return self.prod
        raise ConfigurationError("No target storage is defined for stage " + repr(stage))


def split_bucket_locator(locator: str) -> Tuple[str, Optional[str]]:
    """Split ``arn:aws:s3:::bucket/prefix`` into the bucket ARN and the key prefix."""
    match = S3_LOCATOR_PATTERN.fullmatch(locator or "")
    if not match:
        raise ConfigurationError(
            "The storage locator "
            + repr(locator)
            + " must look like arn:<partition>:s3:::<bucket>[/<key-prefix>]"
        )
    bucket_arn = "arn:" + match.group("partition") + ":s3:::" + match.group("bucket")
    return bucket_arn, match.group("prefix")


@dataclass(frozen=True)
class ServiceDefinition:
    """Everything that varies between the services that get a pipeline."""

    service_name: str
    source: SourceLocations
    # locator of the GitHub token in Secrets Manager, never the token itself
    secret_reference: str
    # what the deployer roles need to deploy the service's resources
    deploy_permissions: Tuple[PermissionGrant, ...]
    # extra permissions for the pipeline's own role
    access_permissions: Tuple[PermissionGrant, ...] = ()
    target_storage: Optional[StorageLocations] = None

    @property
    def has_mvp(self) -> bool:
        return bool(self.source.repo_mvp)


@dataclass(frozen=True)
class ValidatedService:
    service: ServiceDefinition
    accounts: Tuple[Tuple[str, str], ...]

    @property
    def service_name(self) -> str:
        return self.service.service_name

    def account_for(self, stage: str) -> str:
        return dict(self.accounts)[stage]


def _check_service_name(service_name: str) -> None:
    check_identifier(service_name, "service name")
    if not SERVICE_NAME_PATTERN.fullmatch(service_name):
        raise InvalidIdentifierError(
            "The service name "
            + repr(service_name)
            + " may only contain letters, digits, '-' and '_' and must start with a letter or digit"
        )
    if len(service_name) > SERVICE_NAME_MAX_LENGTH:
        raise InvalidIdentifierError(
            "The service name "
            + repr(service_name)
            + " is longer than "
            + str(SERVICE_NAME_MAX_LENGTH)
            + " characters"
        )


def _check_grants(grants, field: str, service_name: str) -> None:
    for grant in grants:
        if not isinstance(grant, PermissionGrant):
            raise ConfigurationError(
                field + " of " + service_name + " must only hold PermissionGrant values"
            )
        if grant.effect not in EFFECTS:
            raise ConfigurationError(
                field + " of " + service_name + " has an invalid effect " + repr(grant.effect)
            )
        if not grant.actions or not grant.resources:
            raise ConfigurationError(
                field + " of " + service_name + " has a statement without actions or resources"
            )


def check_accounts(accounts: StageAccountMap, stages: Iterable[str] = REQUIRED_STAGES) -> None:
    if accounts is None:
        raise ConfigurationError("The deployment target accounts need to be provided")
    for stage in stages:
        if stage not in accounts:
            raise ConfigurationError(
                "No account is configured for the " + repr(stage) + " stage"
            )
        check_account_id(accounts[stage])


def validate_service(service: ServiceDefinition, accounts: StageAccountMap) -> ValidatedService:
    """Check a service definition against the deployment target accounts.

    Raises ConfigurationError (InvalidIdentifierError for naming faults) on the
    first problem found; nothing is derived from a definition that fails.
    """
    if not isinstance(service, ServiceDefinition):
        raise ConfigurationError("Expected a ServiceDefinition, got " + type(service).__name__)

    _check_service_name(service.service_name)
    for stage in ("dev", "staging", "prod"):
        role_name(service.service_name, stage)

    name = service.service_name
    source = service.source
    if source is None or not source.owner or not source.repo_service:
        raise ConfigurationError(
            name + " needs a source owner and a service repository"
        )
    if not source.branch:
        raise ConfigurationError(name + " needs a source branch")
    if not service.secret_reference:
        raise ConfigurationError(
            name + " needs a reference to the source control access token"
        )

    if not service.deploy_permissions:
        raise ConfigurationError(name + " needs at least one deploy permission")
    _check_grants(service.deploy_permissions, "deploy_permissions", name)
    _check_grants(service.access_permissions, "access_permissions", name)

    if service.has_mvp:
        if service.target_storage is None:
            raise ConfigurationError(
                name + " deploys " + source.repo_mvp + " to S3 but has no target buckets"
            )
        split_bucket_locator(service.target_storage.staging)
        split_bucket_locator(service.target_storage.prod)

    check_accounts(accounts)

    logger.debug("Service %s is valid", name)
    return ValidatedService(service=service, accounts=tuple(sorted(accounts.items())))
