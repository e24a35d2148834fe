"""Tollgate: declarative workflow state machines with guarded transitions."""

from .actions import CallbackRegistry, EmitEvent, ErrorPolicy, InvokeCallback, InvokeWebhook
from .conditions import ConditionEvaluator, parse_condition
from .config import TollgateConfig, load_config
from .engine import WorkflowEngine
from .errors import WorkflowError
from .models import InstanceStatus, WorkflowDefinition, WorkflowInstance
from .persistence import get_repository
from .registry import WorkflowDefinitionRegistry
from .transports import get_event_bus

__version__ = "0.1.0"
__all__ = [
    "CallbackRegistry",
    "ConditionEvaluator",
    "EmitEvent",
    "ErrorPolicy",
    "InstanceStatus",
    "InvokeCallback",
    "InvokeWebhook",
    "TollgateConfig",
    "WorkflowDefinition",
    "WorkflowDefinitionRegistry",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowInstance",
    "get_event_bus",
    "get_repository",
    "load_config",
    "parse_condition",
]
