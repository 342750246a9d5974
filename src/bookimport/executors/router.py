"""Pick the executor for a target environment.

``local`` runs as a background process on this machine; every other
environment goes to the remote worker queue.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from bookimport.executors.base import Executor
from bookimport.models.run import Dispatch, DispatchRequest, Environment, ExecutorKind

logger = logging.getLogger(__name__)

_ROUTES: dict[Environment, ExecutorKind] = {
    Environment.LOCAL: ExecutorKind.LOCAL,
    Environment.DEBUGGING: ExecutorKind.REMOTE,
    Environment.STAGING: ExecutorKind.REMOTE,
    Environment.PRODUCTION: ExecutorKind.REMOTE,
}


class Route(BaseModel):
    environment: Environment
    executor: ExecutorKind
    dispatch_target: str


class ExecutorRouter:
    def __init__(self, local: Executor, remote: Executor) -> None:
        self._executors: dict[ExecutorKind, Executor] = {
            ExecutorKind.LOCAL: local,
            ExecutorKind.REMOTE: remote,
        }

    def route(self, environment: Environment | str) -> Route:
        env = Environment(environment)
        kind = _ROUTES[env]
        target = "local-process" if kind == ExecutorKind.LOCAL else f"remote-queue:{env.value}"
        return Route(environment=env, executor=kind, dispatch_target=target)

    def executor_for(self, kind: ExecutorKind) -> Executor:
        return self._executors[kind]

    def dispatch(self, request: DispatchRequest) -> Dispatch:
        """Dispatch through the routed executor; ExecutorUnreachable propagates untouched."""
        route = self.route(request.environment)
        dispatch = self.executor_for(route.executor).dispatch(request)
        logger.info(
            "Routed %s run %s to %s executor",
            route.environment.value, dispatch.run_id, route.executor.value,
        )
        return dispatch
