"""
SDK for Ping Scheduler.

Concrete ping executors and the usage API client.
"""

from .cli_executor import ClaudeCliExecutor
from .openai_executor import OpenAIPingExecutor
from .usage_client import ClaudeUsageClient, UsagePoller
from .web_executor import ClaudeWebPingExecutor

__all__ = [
    "ClaudeCliExecutor",
    "ClaudeWebPingExecutor",
    "OpenAIPingExecutor",
    "ClaudeUsageClient",
    "UsagePoller",
]
