"""Multi-backend workflow orchestrator.

Runs declarative, multi-step workflows where each step is either a prompt sent
to an LLM backend (a CLI agent, OpenAI, Ollama) or a shell command. Steps form
a dependency graph and run in parallel waves.
"""

__version__ = "0.1.0"

from multi_backend_orchestrator.core.config import OrchestratorConfig
from multi_backend_orchestrator.workflow.executor import WorkflowExecutor

__all__ = ["__version__", "OrchestratorConfig", "WorkflowExecutor"]
