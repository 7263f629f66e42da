# unscoped_actions.py
"""
Unscoped IAM action registry.

Some IAM actions operate at the account or region level and have no
ARN-addressable resource, so the only valid Resource for them is "*".
The permission validator consults this registry to avoid flagging those
legitimate wildcards.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

ACTION_NAME_PATTERN = re.compile(r"^[a-z0-9-]+:[A-Za-z0-9*]+$")

# Operations that can only be granted on Resource "*", grouped by service prefix.
# Entries ending in "*" match every action with that prefix.
UNSCOPED_OPERATIONS: dict[str, list[str]] = {
    "ec2": [
        "Describe*", "GetEbsEncryptionByDefault", "GetEbsDefaultKmsKeyId",
    ],
    "iam": [
        "ListUsers", "ListRoles", "ListPolicies", "ListGroups",
        "GetAccountSummary", "GetAccountPasswordPolicy", "GetCredentialReport",
        "GenerateCredentialReport", "ListAccountAliases", "ListOpenIDConnectProviders",
        "ListSAMLProviders", "ListServerCertificates", "ListVirtualMFADevices",
    ],
    "s3": [
        "ListAllMyBuckets", "GetBucketLocation", "GetAccountPublicAccessBlock",
        "PutAccountPublicAccessBlock", "ListAccessPoints", "ListJobs", "CreateJob",
    ],
    "lambda": [
        "ListFunctions", "ListLayers", "ListLayerVersions", "ListEventSourceMappings",
        "GetAccountSettings", "CreateEventSourceMapping", "ListCodeSigningConfigs",
    ],
    "rds": [
        "DescribeDBEngineVersions", "DescribeOrderableDBInstanceOptions",
        "DescribeAccountAttributes", "DescribeEngineDefaultParameters",
        "DescribeEventCategories", "DescribeCertificates",
    ],
    "cloudformation": [
        "ListStacks", "ListExports", "ListImports", "ListStackSets",
        "ListTypes", "ValidateTemplate", "EstimateTemplateCost",
        "CreateUploadBucket",
    ],
    "cloudwatch": [
        "ListMetrics", "GetMetricData", "GetMetricStatistics", "PutMetricData",
        "DescribeAlarmsForMetric", "ListDashboards",
    ],
    "logs": [
        "DescribeDestinations", "DescribeExportTasks", "DescribeQueries",
        "DescribeResourcePolicies", "PutResourcePolicy", "DeleteResourcePolicy",
        "GetLogDelivery", "ListLogDeliveries", "CreateLogDelivery",
    ],
    "dynamodb": [
        "ListTables", "ListBackups", "ListGlobalTables", "ListStreams",
        "DescribeLimits", "DescribeReservedCapacity", "DescribeEndpoints",
    ],
    "sns": [
        "ListTopics", "ListSubscriptions", "ListPlatformApplications",
        "GetSMSAttributes", "SetSMSAttributes", "CheckIfPhoneNumberIsOptedOut",
    ],
    "sqs": [
        "ListQueues",
    ],
    "sts": [
        "GetCallerIdentity", "DecodeAuthorizationMessage", "GetSessionToken",
        "GetAccessKeyInfo", "GetServiceBearerToken",
    ],
    "kms": [
        "ListKeys", "ListAliases", "CreateKey", "GenerateRandom", "ConnectCustomKeyStore",
        "DescribeCustomKeyStores",
    ],
    "secretsmanager": [
        "ListSecrets", "GetRandomPassword", "BatchGetSecretValue",
    ],
    "ssm": [
        "DescribeParameters", "DescribeInstanceInformation", "ListCommands",
        "ListDocuments", "GetInventorySchema",
    ],
    "ecr": [
        "GetAuthorizationToken", "DescribeRegistry", "GetRegistryPolicy",
    ],
    "ecs": [
        "ListClusters", "ListTaskDefinitions", "ListTaskDefinitionFamilies",
        "CreateCluster", "RegisterTaskDefinition", "DeregisterTaskDefinition",
        "DescribeTaskDefinition",
    ],
    "elasticloadbalancing": [
        "DescribeLoadBalancers", "DescribeTargetGroups", "DescribeListeners",
        "DescribeRules", "DescribeTargetHealth", "DescribeSSLPolicies",
        "DescribeAccountLimits",
    ],
    "acm": [
        "ListCertificates", "RequestCertificate", "ImportCertificate",
    ],
    "route53": [
        "ListHostedZones", "ListHostedZonesByName", "GetHostedZoneCount",
        "CreateHostedZone", "ListHealthChecks",
    ],
    "cloudfront": [
        "ListDistributions", "ListCachePolicies", "ListOriginRequestPolicies",
    ],
    "tag": [
        "GetResources", "GetTagKeys", "GetTagValues",
    ],
}


class UnscopedActionRegistry:
    """Fixed set of IAM actions that cannot be scoped to a resource ARN."""

    def __init__(self, actions: Iterable[str]):
        """
        Build the registry.

        Args:
            actions: Fully-qualified action names ("service:Action"); a trailing
                "*" turns the entry into a prefix pattern

        Raises:
            ValueError: If an entry is not a "service:Action" name

        """
        exact = set()
        prefixes = set()
        for action in actions:
            if not isinstance(action, str) or not ACTION_NAME_PATTERN.match(action):
                msg = f"Invalid unscoped action entry: {action!r}"
                raise ValueError(msg)
            lowered = action.lower()
            if lowered.endswith("*"):
                prefixes.add(lowered[:-1])
            else:
                exact.add(lowered)
        self._exact = frozenset(exact)
        self._prefixes = tuple(sorted(prefixes))

    @classmethod
    def from_operations(cls, operations: dict[str, list[str]]) -> UnscopedActionRegistry:
        """Build a registry from a service -> operation names table."""
        return cls(
            f"{service}:{operation}"
            for service, service_operations in operations.items()
            for operation in service_operations
        )

    def is_unscoped(self, action: str) -> bool:
        """Return True if the action can only be granted on Resource "*"."""
        if not isinstance(action, str):
            return False
        lowered = action.lower()
        if lowered in self._exact:
            return True
        return any(lowered.startswith(prefix) for prefix in self._prefixes)

    def __contains__(self, action: object) -> bool:
        return isinstance(action, str) and self.is_unscoped(action)

    def __len__(self) -> int:
        return len(self._exact) + len(self._prefixes)


DEFAULT_REGISTRY = UnscopedActionRegistry.from_operations(UNSCOPED_OPERATIONS)
