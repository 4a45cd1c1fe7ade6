from app.models.line_message import LineMessage
from app.models.workflow_instance import WorkflowInstance
from app.models.workflow_step import WorkflowStep

__all__ = [
    "LineMessage",
    "WorkflowInstance",
    "WorkflowStep",
]
