"""Cruise control: run every gear back to back in auto mode."""

from __future__ import annotations

import asyncio
import signal
import sys

import structlog

from gearshift.collaborators import CommandCollaborator, StageCollaborator
from gearshift.config import Settings
from gearshift.errors import InvalidParameter
from gearshift.models import AutoConfig, ImplementationScope, Route, Stage, WorkflowState
from gearshift.path_guard import (
    PathGuard,
    validate_clarifications_strategy,
    validate_implementation_scope,
    validate_route,
)
from gearshift.pipeline import StageRunner
from gearshift.state_store import StateStore

logger = structlog.get_logger()


class CruiseControl:
    """Runs one gear per cycle until the pipeline is done or must stop."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        collaborator: StageCollaborator,
    ) -> None:
        self._settings = settings
        self._store = store
        self._runner = StageRunner(store, collaborator, settings)
        self._running = False

    def engage(self, route: Route, auto_config: AutoConfig) -> WorkflowState:
        """Record the route and auto-mode settings in the workflow state."""
        state = self._store.initialize(route=route, auto_config=auto_config)
        logger.info(
            "cruise_engaged",
            route=route.value,
            clarifications_strategy=auto_config.clarifications_strategy.value,
            implementation_scope=auto_config.implementation_scope.value,
        )
        return state

    async def run(self) -> None:
        """Run gears until done, a gear fails, a pause point, or stop()."""
        self._running = True
        logger.info("cruise_started", project=str(self._store.directory))

        while self._running:
            try:
                keep_going = await self._cycle()
            except Exception:
                logger.exception("cruise_cycle_error")
                break

            if not keep_going:
                break

            try:
                await asyncio.sleep(self._settings.poll_interval)
            except asyncio.CancelledError:
                break

        self._running = False
        logger.info("cruise_stopped")

    def stop(self) -> None:
        """Signal cruise control to stop after the current gear."""
        logger.info("cruise_stopping")
        self._running = False

    async def _cycle(self) -> bool:
        """Run a single gear. Returns True if the next gear should follow."""
        state = self._runner.current_state()
        stage = state.next_gear()
        if stage is None:
            logger.info("cruise_complete")
            return False

        config = state.auto_config or AutoConfig()
        if stage == Stage.IMPLEMENT and config.implementation_scope == ImplementationScope.NONE:
            logger.info("cruise_parked", stage=stage.value, reason="implementation_scope_none")
            return False

        outcome = self._runner.run_stage()
        if not outcome.success:
            logger.warning("cruise_stage_failed", stage=stage.value, error=outcome.error)
            return False

        if config.pause_between_gears:
            logger.info("cruise_paused", after=stage.value)
            return False

        return not outcome.state.is_done


def configure_logging(log_level: str) -> None:
    # stdout is reserved for command output such as the roadmap plan
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.stdlib.NAME_TO_LEVEL.get(log_level.lower(), 20)
        ),
    )


def create_cruise_control(settings: Settings | None = None) -> tuple[CruiseControl, Route, AutoConfig]:
    """Create cruise control from settings; inputs are validated before any I/O."""
    settings = settings or Settings()
    configure_logging(settings.log_level)

    route = validate_route(settings.route)
    if route is None:
        raise InvalidParameter("route", "required for cruise control (greenfield or brownfield)")
    auto_config = AutoConfig(
        clarifications_strategy=validate_clarifications_strategy(settings.clarifications_strategy),
        implementation_scope=validate_implementation_scope(settings.implementation_scope),
        pause_between_gears=settings.pause_between_gears,
    )

    guard = PathGuard.from_settings(settings)
    store = StateStore(settings.project_dir, settings, guard)
    cruise = CruiseControl(settings, store, CommandCollaborator(settings))
    return cruise, route, auto_config


def run_with_signal_handling() -> None:
    """Run cruise control with graceful shutdown on SIGINT/SIGTERM."""
    cruise, route, auto_config = create_cruise_control()
    cruise.engage(route, auto_config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cruise.stop)

    try:
        loop.run_until_complete(cruise.run())
    finally:
        loop.close()
