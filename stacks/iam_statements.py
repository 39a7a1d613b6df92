from aws_cdk import aws_iam as iam

from cicd.service_definition import PermissionGrant


def to_policy_statement(grant: PermissionGrant) -> iam.PolicyStatement:
    # sorted so re-synthesising the same grants gives the same template
    return iam.PolicyStatement(
        effect=iam.Effect.ALLOW if grant.effect == "Allow" else iam.Effect.DENY,
        actions=sorted(grant.actions),
        resources=sorted(grant.resources),
    )
