"""Scheduling engine: queue, registry, dispatcher, bridges and autonomy."""

from taskhive.engine.autonomy import AutonomyController, CycleReport
from taskhive.engine.bridge import BRIDGE_EVENTS, BaseBridge, SimulatedBridge
from taskhive.engine.dispatcher import Admission, Dispatcher
from taskhive.engine.queue import PriorityTaskQueue, QueueEntry
from taskhive.engine.registry import Agent, AgentRegistry, AgentState

__all__ = [
    "BRIDGE_EVENTS",
    "Admission",
    "Agent",
    "AgentRegistry",
    "AgentState",
    "AutonomyController",
    "BaseBridge",
    "CycleReport",
    "Dispatcher",
    "PriorityTaskQueue",
    "QueueEntry",
    "SimulatedBridge",
]
