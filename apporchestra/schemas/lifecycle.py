"""
Lifecycle states and the transitions allowed between them.

    UNINITIALIZED --start--> STARTING --ok--> RUNNING --stop--> STOPPING --ok--> STOPPED
                                |                |                 |
                                +--fail--> ON_FIRE <--fail---------+
    STOPPED --start--> STARTING     (restart allowed)
    ON_FIRE --stop--> STOPPING      (operator-initiated recovery)

RECOVERING is the substate entered on rehydration by entities that were
live when state was last persisted; it resolves to RUNNING or ON_FIRE.
"""

from enum import Enum


class Lifecycle(str, Enum):
    """Lifecycle state of an entity, published as the service.state sensor."""
    UNINITIALIZED = "UNINITIALIZED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ON_FIRE = "ON_FIRE"
    RECOVERING = "RECOVERING"

    @property
    def is_live(self) -> bool:
        """True for states in which the entity may hold a machine."""
        return self in (
            Lifecycle.STARTING,
            Lifecycle.RUNNING,
            Lifecycle.STOPPING,
            Lifecycle.RECOVERING,
        )


TRANSITIONS: dict[Lifecycle, frozenset[Lifecycle]] = {
    Lifecycle.UNINITIALIZED: frozenset({Lifecycle.STARTING}),
    Lifecycle.STARTING: frozenset({Lifecycle.RUNNING, Lifecycle.ON_FIRE, Lifecycle.STOPPED}),
    Lifecycle.RUNNING: frozenset({Lifecycle.STOPPING, Lifecycle.ON_FIRE}),
    Lifecycle.STOPPING: frozenset({Lifecycle.STOPPED, Lifecycle.ON_FIRE}),
    Lifecycle.STOPPED: frozenset({Lifecycle.STARTING}),
    Lifecycle.ON_FIRE: frozenset({Lifecycle.STOPPING}),
    Lifecycle.RECOVERING: frozenset({Lifecycle.RUNNING, Lifecycle.ON_FIRE, Lifecycle.STOPPING}),
}


def can_transition(current: Lifecycle, target: Lifecycle) -> bool:
    """Check whether ``current -> target`` is an allowed transition."""
    return target in TRANSITIONS[current]
