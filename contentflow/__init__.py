"""contentflow: scheduled, durable multi-step content pipelines."""

from .contracts import Flow, FlowScheduling, Pipeline, StepDefinition, StepOverride
from .correlation import find_handler_result
from .dispatch import JobCreator
from .engine import StepExecutor
from .errors import StepFailure
from .execute import JobWorker
from .gate import ConcurrencyGate
from .handlers import StepContext, StepHandler
from .packets import DataPacket
from .persistence import JobStatus, get_config_store, get_repository
from .registry import REGISTRY, register_handler
from .runtime import build_runtime
from .scheduler import Scheduler
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ConcurrencyGate",
    "DataPacket",
    "Flow",
    "FlowScheduling",
    "JobCreator",
    "JobStatus",
    "JobWorker",
    "Pipeline",
    "REGISTRY",
    "Scheduler",
    "StepContext",
    "StepDefinition",
    "StepExecutor",
    "StepFailure",
    "StepHandler",
    "StepOverride",
    "build_runtime",
    "find_handler_result",
    "get_config_store",
    "get_repository",
    "get_transport",
    "register_handler",
]
