"""Process Orchestrator.

Workflow orchestration core of a business-process portal:
- decision table evaluation
- human task lifecycle
- SLA clocks with warnings and breaches
- triggers that start process instances from domain events, cron and webhooks
"""

__version__ = "0.1.0"

from process_orchestrator.config import CoreSettings

__all__ = ["__version__", "CoreSettings"]
