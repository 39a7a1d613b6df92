import re

from cicd.errors import InvalidIdentifierError

# IAM role names: https://docs.aws.amazon.com/IAM/latest/APIReference/API_CreateRole.html
ROLE_NAME_MAX_LENGTH = 64
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9+=,.@_-]+$")
ACCOUNT_ID_PATTERN = re.compile(r"^[0-9]+$")


def check_identifier(value: str, kind: str = "identifier") -> str:
    if not isinstance(value, str) or not value:
        raise InvalidIdentifierError("The " + kind + " must be a non-empty string")
    if not IDENTIFIER_PATTERN.fullmatch(value):
        raise InvalidIdentifierError(
            "The " + kind + " " + repr(value) + " contains characters not allowed in IAM names"
        )
    return value


def check_account_id(account_id: str) -> str:
    if not isinstance(account_id, str) or not ACCOUNT_ID_PATTERN.fullmatch(account_id):
        raise InvalidIdentifierError(
            "The account id " + repr(account_id) + " must be a non-empty string of digits"
        )
    return account_id


def role_name(service_name: str, stage: str) -> str:
    """Name of the role a service's pipeline assumes to deploy into ``stage``.

    Both the role created in the target account and the ``sts:AssumeRole``
    grant of the build role are derived from this, so the two always match.
    """
    check_identifier(service_name, "service name")
    check_identifier(stage, "stage name")
    name = service_name + "-" + stage + "-deployer-role"
    if len(name) > ROLE_NAME_MAX_LENGTH:
        raise InvalidIdentifierError(
            "The role name "
            + name
            + " is longer than "
            + str(ROLE_NAME_MAX_LENGTH)
            + " characters"
        )
    return name


def role_arn(service_name: str, stage: str, account_id: str) -> str:
    name = role_name(service_name, stage)
    return "arn:aws:iam::" + check_account_id(account_id) + ":role/" + name


def policy_name(service_name: str, stage: str) -> str:
    return role_name(service_name, stage) + "-policy"
