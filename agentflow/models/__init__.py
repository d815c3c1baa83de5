from agentflow.models.event import Event
from agentflow.models.medic_check import MedicCheck
from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.models.story import Story

__all__ = [
    "Event",
    "MedicCheck",
    "Run",
    "Step",
    "Story",
]
