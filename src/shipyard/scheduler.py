"""
Explicit stage dependency graph and the sequential scheduler that walks it.

A stage runs only when it is eligible for the triggering event and every stage
it needs has succeeded. Otherwise it is marked skipped, never failed. The
first failure fails the run and every stage not yet started is skipped.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Sequence, Set

from .credentials import CredentialProvider, scoped_credential
from .errors import ConfigurationError, StageFailure
from .models import PipelineRun, RunStatus, Stage, StageStatus
from .stages.base import StageContext, StageHandler


LOGGER = logging.getLogger("shipyard.scheduler")


class StageGraph:
    """Stages in dependency order. Declaration order breaks ties."""

    def __init__(self, handlers: Sequence[StageHandler]) -> None:
        by_name: Dict[str, StageHandler] = {}
        for handler in handlers:
            if handler.name in by_name:
                raise ConfigurationError(f"Stage {handler.name!r} is declared twice")
            by_name[handler.name] = handler
        for handler in handlers:
            unknown = [dep for dep in handler.needs if dep not in by_name]
            if unknown:
                raise ConfigurationError(f"Stage {handler.name!r} needs unknown stage(s): {', '.join(unknown)}")
        self._handlers = by_name
        self._order = self._topological_order(list(handlers))

    @property
    def ordered(self) -> List[StageHandler]:
        return [self._handlers[name] for name in self._order]

    @property
    def names(self) -> List[str]:
        return list(self._order)

    def dependents(self, name: str) -> Set[str]:
        """All stages that transitively need *name*."""
        found: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for handler in self._handlers.values():
                if current in handler.needs and handler.name not in found:
                    found.add(handler.name)
                    frontier.append(handler.name)
        return found

    @staticmethod
    def _topological_order(handlers: List[StageHandler]) -> List[str]:
        order: List[str] = []
        placed: Set[str] = set()
        remaining = list(handlers)
        while remaining:
            ready = [handler for handler in remaining if all(dep in placed for dep in handler.needs)]
            if not ready:
                cycle = ", ".join(handler.name for handler in remaining)
                raise ConfigurationError(f"Stage dependencies form a cycle among: {cycle}")
            for handler in ready:
                order.append(handler.name)
                placed.add(handler.name)
            remaining = [handler for handler in remaining if handler.name not in placed]
        return order


class StageScheduler:
    def __init__(self, graph: StageGraph, credentials: CredentialProvider) -> None:
        self._graph = graph
        self._credentials = credentials

    def run(self, run: PipelineRun, eligible: Iterable[str], context: StageContext) -> PipelineRun:
        eligible_names = set(eligible)
        run.stages = [Stage(name=handler.name, needs=tuple(handler.needs)) for handler in self._graph.ordered]
        run.status = RunStatus.RUNNING

        for handler in self._graph.ordered:
            stage = run.stage(handler.name)
            if run.status is RunStatus.FAILED:
                _skip(stage, "run already failed")
                continue
            if handler.name not in eligible_names:
                _skip(stage, f"not eligible for {run.event.type.value} on {run.event.branch}")
                continue
            blocked = [dep for dep in handler.needs if run.stage(dep).status is not StageStatus.SUCCEEDED]
            if blocked:
                _skip(stage, f"needs {', '.join(blocked)} which did not succeed")
                continue
            self._execute(handler, stage, run, context)

        if run.status is not RunStatus.FAILED:
            run.status = RunStatus.SUCCEEDED
        return run

    def _execute(self, handler: StageHandler, stage: Stage, run: PipelineRun, context: StageContext) -> None:
        stage.status = StageStatus.RUNNING
        stage.started_at = _now()
        LOGGER.info("-> %s", handler.name)
        try:
            if handler.credential is None:
                result = handler.execute(context, None)
            else:
                with scoped_credential(self._credentials, handler.credential, handler.name, context.config) as credential:
                    result = handler.execute(context, credential)
        except StageFailure as exc:
            self._fail(stage, run, exc)
        except Exception as exc:
            LOGGER.exception("%s stage raised unexpectedly", handler.name)
            self._fail(stage, run, StageFailure(handler.name, f"{type(exc).__name__}: {exc}"))
        else:
            stage.status = StageStatus.SUCCEEDED
            stage.summary = result.summary
            stage.completed_at = _now()
            context.outputs[handler.name] = result
            LOGGER.info("completed %s: %s", handler.name, result.summary)

    def _fail(self, stage: Stage, run: PipelineRun, exc: StageFailure) -> None:
        stage.status = StageStatus.FAILED
        stage.summary = exc.cause
        stage.error_kind = exc.kind
        stage.completed_at = _now()
        run.status = RunStatus.FAILED
        run.error = str(exc)
        halted = sorted(self._graph.dependents(stage.name))
        LOGGER.error(
            "%s failed (%s): %s; halting %s",
            stage.name,
            exc.kind,
            exc.cause,
            ", ".join(halted) or "nothing further",
        )


def _skip(stage: Stage, reason: str) -> None:
    stage.status = StageStatus.SKIPPED
    stage.summary = reason
    LOGGER.info("skipped %s: %s", stage.name, reason)


def _now() -> datetime:
    return datetime.now(timezone.utc)
