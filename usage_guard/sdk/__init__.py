"""
SDK for usage-guard.

Provides the GitHub billing client and the collaborators the scheduler
talks to: credentials and notification delivery.
"""

from .credentials import EnvCredentialProvider, StaticCredentialProvider
from .github_client import GitHubBillingClient
from .notifications import ConsoleNotificationSink

__all__ = [
    "ConsoleNotificationSink",
    "EnvCredentialProvider",
    "GitHubBillingClient",
    "StaticCredentialProvider",
]
