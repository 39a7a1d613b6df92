import contextlib

from jsii.errors import JSIIError


class CicdError(Exception):
    """Base class for everything raised by the cicd package."""


class ConfigurationError(CicdError, ValueError):
    """A service definition or the deployment target accounts are incomplete or malformed."""


class InvalidIdentifierError(ConfigurationError):
    """A name cannot be used to build resource names (empty, bad characters, too long)."""


class ExternalProvisioningError(CicdError):
    """Raised by the CDK runtime while building or synthesising the descriptors.

    The message is kept as-is and the original exception is chained.
    """


@contextlib.contextmanager
def provisioning_errors():
    # jsii reports JavaScript-side failures as RuntimeError, kernel failures as JSIIError
    try:
        yield
    except (JSIIError, RuntimeError) as err:
        raise ExternalProvisioningError(str(err)) from err
