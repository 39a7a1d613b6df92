from cicd.errors import (
    CicdError,
    ConfigurationError,
    ExternalProvisioningError,
    InvalidIdentifierError,
)
from cicd.naming import role_arn, role_name
from cicd.service_definition import (
    PermissionGrant,
    ServiceDefinition,
    SourceLocations,
    StorageLocations,
    validate_service,
)
from cicd.topology import SourceTrigger, build_topologies, build_topology
from cicd.trust import build_trust_descriptor

__all__ = [
    "CicdError",
    "ConfigurationError",
    "ExternalProvisioningError",
    "InvalidIdentifierError",
    "PermissionGrant",
    "ServiceDefinition",
    "SourceLocations",
    "SourceTrigger",
    "StorageLocations",
    "build_topologies",
    "build_topology",
    "build_trust_descriptor",
    "role_arn",
    "role_name",
    "validate_service",
]
