"""Infrastructure layer for external services."""

from .browser import BrowserService
from .llm import PromptGenerationClient
from .messaging import MessageBus, Mailbox, HOST_ADDRESS, page_address
from .network_monitor import NetworkSilenceMonitor, MonitorEntry
from .storage import Storage, MemoryStorage, JsonFileStorage

__all__ = [
    "BrowserService",
    "PromptGenerationClient",
    "MessageBus",
    "Mailbox",
    "HOST_ADDRESS",
    "page_address",
    "NetworkSilenceMonitor",
    "MonitorEntry",
    "Storage",
    "MemoryStorage",
    "JsonFileStorage",
]
