"""Adapter between the host's build commands and :class:`MacBridge`.

The host delivers every build-related command as a :class:`HostEvent`
through one callback, :meth:`BuildCycleCoordinator.handle`, and gets back a
:class:`HostDecision`: let its own action run, or suppress it because the
build ran on the Mac instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum, auto

from macbridge.bridge import MacBridge, OperationKind
from macbridge.models import ProjectDescriptor
from macbridge.utils.path_helpers import normalize_local_path

logger = logging.getLogger(__name__)


class HostEventKind(Enum):
    CYCLE_BEGIN = auto()
    BUILD = auto()
    CLEAN = auto()
    DEBUG = auto()
    REBUILD = auto()
    CANCEL = auto()
    CYCLE_DONE = auto()


class HostDecision(IntEnum):
    PROCEED = 0
    SUPPRESS = 1


@dataclass(frozen=True)
class HostEvent:
    kind: HostEventKind
    project: ProjectDescriptor | None = None


_OPERATIONS = {
    HostEventKind.BUILD: OperationKind.BUILD,
    HostEventKind.CLEAN: OperationKind.CLEAN,
    HostEventKind.DEBUG: OperationKind.DEBUG,
    HostEventKind.REBUILD: OperationKind.REBUILD,
}


class BuildCycleCoordinator:
    """Routes host build events to the bridge."""

    def __init__(self, bridge: MacBridge) -> None:
        self.bridge = bridge

    def handle(self, event: HostEvent) -> HostDecision:
        try:
            return self._handle(event)
        except Exception:
            logger.exception("Unhandled error while handling %s", event.kind.name)
            return HostDecision.PROCEED

    def _handle(self, event: HostEvent) -> HostDecision:
        bridge = self.bridge

        if event.kind is HostEventKind.CYCLE_BEGIN:
            if event.project is not None:
                bridge.begin_cycle(event.project)
            return HostDecision.PROCEED

        if event.kind is HostEventKind.CANCEL:
            if bridge.session.is_active:
                bridge.cancel_operation()
            return HostDecision.PROCEED

        if event.kind is HostEventKind.CYCLE_DONE:
            if bridge.session.is_active:
                bridge.complete_cycle()
            return HostDecision.PROCEED

        if not bridge.session.is_active or not self._is_session_project(event.project):
            return HostDecision.PROCEED

        bridge.run_operation(_OPERATIONS[event.kind])
        return HostDecision.SUPPRESS

    def _is_session_project(self, project: ProjectDescriptor | None) -> bool:
        session_path = self.bridge.session.project_path
        if project is None or session_path is None:
            return False
        return str(normalize_local_path(project.path)) == session_path
