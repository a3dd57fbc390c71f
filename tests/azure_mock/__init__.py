"""Azure API Mock for Integration Testing.

This module provides a mock implementation of the Azure Policy management
APIs that enables integration testing without actual Azure connectivity.

Key Features:
- In-memory state for policy definitions and assignments
- Write log for asserting the order of puts and deletes
- Error injection: authentication failure, 403 at chosen scopes
- Enforcement simulation for resource group creation
- Blob storage with leases for the remote state backend

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        reconciler = Reconciler(config)
        reconciler.init()
        reconciler.apply()

        assert ctx.state.definition_count == 2
        ctx.engine.create_resource_group(sub_id, "rg-demo", "eastus")
"""

from .context import (
    TEST_SUBSCRIPTION_ID,
    MockAzureContext,
    arm_environment,
    mock_azure_context,
)
from .credential import MockClientSecretCredential, create_mock_credential
from .policy import (
    BUILTIN_ALLOWED_LOCATIONS_ID,
    MockPolicyClient,
    MockPolicyEngine,
    MockPolicyState,
)
from .storage import (
    TEST_STATE_CONTAINER,
    TEST_STORAGE_ACCOUNT_URL,
    MockBlobClient,
    MockBlobLeaseClient,
    MockBlobServiceClient,
    MockBlobStorage,
)

__all__ = [
    "BUILTIN_ALLOWED_LOCATIONS_ID",
    "TEST_STATE_CONTAINER",
    "TEST_STORAGE_ACCOUNT_URL",
    "TEST_SUBSCRIPTION_ID",
    "MockAzureContext",
    "MockBlobClient",
    "MockBlobLeaseClient",
    "MockBlobServiceClient",
    "MockBlobStorage",
    "MockClientSecretCredential",
    "MockPolicyClient",
    "MockPolicyEngine",
    "MockPolicyState",
    "arm_environment",
    "create_mock_credential",
    "mock_azure_context",
]
