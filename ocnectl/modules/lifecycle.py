"""The states a cluster moves through while a driver works on it.

    absent -> bootstrapping -> control-plane-ready -> workers-joining -> ready
    ready -> upgrade-staged -> ready
    any -> deleting -> absent

Drivers report intermediate states through ``ClusterDriver.report_state``.
``Lifecycle`` checks every transition and keeps the history.
"""
import logging
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from ..errors import PreconditionError
from .drivers.base import ClusterDriver

logger = logging.getLogger("ocnectl.lifecycle")


class ClusterState(str, Enum):
    ABSENT = "absent"
    BOOTSTRAPPING = "bootstrapping"
    CONTROL_PLANE_READY = "control-plane-ready"
    WORKERS_JOINING = "workers-joining"
    READY = "ready"
    UPGRADE_STAGED = "upgrade-staged"
    DELETING = "deleting"


_TRANSITIONS: Dict[ClusterState, FrozenSet[ClusterState]] = {
    # A cluster found running when starting goes straight to ready
    ClusterState.ABSENT: frozenset({ClusterState.BOOTSTRAPPING, ClusterState.READY}),
    ClusterState.BOOTSTRAPPING: frozenset({ClusterState.CONTROL_PLANE_READY}),
    ClusterState.CONTROL_PLANE_READY: frozenset({ClusterState.WORKERS_JOINING, ClusterState.READY}),
    ClusterState.WORKERS_JOINING: frozenset({ClusterState.READY}),
    ClusterState.READY: frozenset({ClusterState.UPGRADE_STAGED, ClusterState.WORKERS_JOINING}),
    ClusterState.UPGRADE_STAGED: frozenset({ClusterState.READY, ClusterState.UPGRADE_STAGED}),
    ClusterState.DELETING: frozenset({ClusterState.ABSENT}),
}


def can_transition(current: ClusterState, new: ClusterState) -> bool:
    if new == ClusterState.DELETING:
        return current != ClusterState.DELETING
    return new in _TRANSITIONS[current]


class Lifecycle:
    """Drive a cluster through its states with a driver."""

    def __init__(self, driver: ClusterDriver, state: ClusterState = ClusterState.ABSENT):
        self.driver = driver
        self.state = state
        self.history: List[ClusterState] = [state]
        driver.state_listener = self.transition

    def transition(self, new: ClusterState) -> None:
        new = ClusterState(new)
        if not can_transition(self.state, new):
            raise PreconditionError(f"Cluster can not move from {self.state.value} to {new.value}")
        logger.debug("Cluster %s: %s -> %s", self.driver.cluster_config.name, self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def _settle(self) -> None:
        if self.state in (ClusterState.CONTROL_PLANE_READY, ClusterState.WORKERS_JOINING):
            self.transition(ClusterState.READY)

    def start(self, install: Optional[Callable[[], None]] = None) -> Tuple[bool, bool]:
        """Start the cluster and post-start it if it was created.

        Args:
            install: Installs applications into a new cluster before ``post_start``

        Returns:
            What the driver returned from ``start``
        """
        running, changed = self.driver.start()
        if self.state == ClusterState.ABSENT:
            self.transition(ClusterState.READY)
        else:
            self._settle()
        if not running:
            if install is not None:
                install()
            self.driver.post_start()
        return running, changed

    def join(self, kubeconfig: str, control_plane_nodes: int, worker_nodes: int) -> None:
        if self.state != ClusterState.READY:
            raise PreconditionError(f"Nodes can not be joined to a cluster that is {self.state.value}")
        self.transition(ClusterState.WORKERS_JOINING)
        self.driver.join(kubeconfig, control_plane_nodes, worker_nodes)
        self.transition(ClusterState.READY)

    def stage(self, version: str) -> Tuple[str, str, bool]:
        if not can_transition(self.state, ClusterState.UPGRADE_STAGED):
            raise PreconditionError(f"An upgrade can not be staged for a cluster that is {self.state.value}")
        result = self.driver.stage(version)
        self.transition(ClusterState.UPGRADE_STAGED)
        return result

    def finish_upgrade(self) -> None:
        """Nodes were rolled to the staged version."""
        self.transition(ClusterState.READY)

    def delete(self) -> None:
        self.transition(ClusterState.DELETING)
        self.driver.delete()
        self.transition(ClusterState.ABSENT)

