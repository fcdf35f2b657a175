"""
apporchestra.schemas - Record definitions for the orchestration core.

EntityTypeSpec -> ResolvedType -> EntityPlan -> Entity -> TaskRecord

Lifecycle:
1. EntityTypeSpec: Static declaration of a type tag (config keys, sensors, effectors)
2. ResolvedType: Type with its parent chain flattened by the catalog
3. EntityPlan: Declarative tree describing an application
4. TaskRecord: Runtime record of every effector invocation and nested step
"""

from .lifecycle import Lifecycle, TRANSITIONS, can_transition
from .task import TaskRecord, TaskState
from .location import Location
from .entity_type import (
    ConfigKey,
    SensorDescriptor,
    ParameterSpec,
    EffectorDescriptor,
    EntityTypeSpec,
    ResolvedType,
    check_type,
)
from .plan import EntityPlan, application_plan, load_plan

__all__ = [
    # Lifecycle
    "Lifecycle",
    "TRANSITIONS",
    "can_transition",
    # Tasks
    "TaskRecord",
    "TaskState",
    # Locations
    "Location",
    # Entity types
    "ConfigKey",
    "SensorDescriptor",
    "ParameterSpec",
    "EffectorDescriptor",
    "EntityTypeSpec",
    "ResolvedType",
    "check_type",
    # Plans
    "EntityPlan",
    "application_plan",
    "load_plan",
]
