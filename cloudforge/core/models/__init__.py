"""
Domain models — Pydantic types for the orchestrator.

All models are re-exported here for convenient access:

    from cloudforge.core.models import ResourceSelection, DeploymentParams, ResourceRecord
"""

from cloudforge.core.models.credentials import (
    AwsCredentials,
    AzureCredentials,
    ProviderCredentials,
    parse_credentials,
)
from cloudforge.core.models.events import (
    ErrorEvent,
    LogEvent,
    ProgressEvent,
    SuccessEvent,
    event_from_wire,
)
from cloudforge.core.models.resource import ResourceRecord
from cloudforge.core.models.selection import (
    PRIMITIVES,
    DeploymentParams,
    ResourceSelection,
)

__all__ = [
    # credentials.py
    "AwsCredentials",
    "AzureCredentials",
    # selection.py
    "DeploymentParams",
    # events.py
    "ErrorEvent",
    "LogEvent",
    "PRIMITIVES",
    "ProgressEvent",
    "ProviderCredentials",
    # resource.py
    "ResourceRecord",
    "ResourceSelection",
    "SuccessEvent",
    "event_from_wire",
    "parse_credentials",
]
