"""
Governed Agent Client

Keeps a consistent client-side view of a long-running, server-driven governed task
while updates arrive on a push channel and user commands take effect only through
later push events.
"""

from .main import create_app
from .orchestrator import GovernedTaskOrchestrator, OrchestratorRegistry, TaskView

__all__ = ["create_app", "GovernedTaskOrchestrator", "OrchestratorRegistry", "TaskView"]
