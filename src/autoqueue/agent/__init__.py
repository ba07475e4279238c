"""Queue orchestration, page agents and their supervision."""

from .host import HostProcess
from .orchestrator import QueueOrchestrator, recover_stale_items
from .page_agent import PageAgent, AgentPhase
from .signals import CompletionSignal, race_first
from .supervisor import AgentSupervisor

__all__ = [
    "HostProcess",
    "QueueOrchestrator",
    "recover_stale_items",
    "PageAgent",
    "AgentPhase",
    "CompletionSignal",
    "race_first",
    "AgentSupervisor",
]
