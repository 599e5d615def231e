"""Tests for gearshift.cruise."""

import asyncio
from unittest.mock import MagicMock

import pytest

from gearshift.collaborators import StageResult
from gearshift.config import Settings
from gearshift.cruise import CruiseControl, create_cruise_control
from gearshift.errors import InvalidParameter, InvalidPath
from gearshift.models import (
    AutoConfig,
    ClarificationsStrategy,
    ImplementationScope,
    Route,
    Stage,
)
from gearshift.state_store import StateStore


def _make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "allowed_roots": [str(tmp_path)],
        "project_dir": str(tmp_path),
        "poll_interval": 0,
        "retry_backoff_base": 0.01,
        "max_retries": 1,
    }
    values.update(overrides)
    return Settings(**values)


def _make_cruise(tmp_path, collaborator=None):
    settings = _make_settings(tmp_path)
    store = StateStore(tmp_path, settings)
    if collaborator is None:
        collaborator = MagicMock()
        collaborator.run.return_value = StageResult(success=True)
    return CruiseControl(settings, store, collaborator), store, collaborator


class TestCruiseControl:
    """Tests for CruiseControl."""

    @pytest.mark.asyncio
    async def test_runs_every_gear_with_full_scope(self, tmp_path):
        cruise, store, collaborator = _make_cruise(tmp_path)
        cruise.engage(Route.GREENFIELD, AutoConfig(implementation_scope=ImplementationScope.ALL))

        await cruise.run()

        assert store.load().is_done
        assert collaborator.run.call_count == 6
        assert cruise._running is False

    @pytest.mark.asyncio
    async def test_parks_before_implement_without_scope(self, tmp_path):
        cruise, store, collaborator = _make_cruise(tmp_path)
        cruise.engage(Route.BROWNFIELD, AutoConfig())

        await cruise.run()

        state = store.load()
        assert state.current_stage == Stage.IMPLEMENT
        assert collaborator.run.call_count == 5

    @pytest.mark.asyncio
    async def test_stops_on_stage_failure(self, tmp_path):
        collaborator = MagicMock()
        collaborator.run.side_effect = [
            StageResult(success=True),
            StageResult(success=False, error="tool failed"),
        ]
        cruise, store, _ = _make_cruise(tmp_path, collaborator)
        cruise.engage(Route.BROWNFIELD, AutoConfig())

        await cruise.run()

        state = store.load()
        assert state.current_stage == Stage.REVERSE_ENGINEER
        assert state.stage_details[Stage.REVERSE_ENGINEER].error == "tool failed"

    @pytest.mark.asyncio
    async def test_pauses_between_gears(self, tmp_path):
        cruise, store, collaborator = _make_cruise(tmp_path)
        cruise.engage(Route.BROWNFIELD, AutoConfig(pause_between_gears=True))

        await cruise.run()

        assert store.load().completed_stages == [Stage.ANALYZE]
        collaborator.run.assert_called_once()

    @pytest.mark.asyncio
    async def test_cycle_when_done(self, tmp_path):
        cruise, store, collaborator = _make_cruise(tmp_path)
        store.override_stage(Stage.DONE, "imported")

        assert await cruise._cycle() is False
        collaborator.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_cruise_control(self, tmp_path):
        collaborator = MagicMock()
        collaborator.run.return_value = StageResult(success=True)
        settings = _make_settings(tmp_path, poll_interval=0.05)
        store = StateStore(tmp_path, settings)
        cruise = CruiseControl(settings, store, collaborator)
        cruise.engage(Route.BROWNFIELD, AutoConfig(implementation_scope=ImplementationScope.ALL))

        # Start cruise control and stop it after a short delay
        async def stop_after_delay():
            await asyncio.sleep(0.01)
            cruise.stop()

        task = asyncio.create_task(stop_after_delay())
        await cruise.run()
        await task

        assert cruise._running is False
        assert not store.load().is_done

    @pytest.mark.asyncio
    async def test_unexpected_error_stops_loop(self, tmp_path):
        cruise, _, _ = _make_cruise(tmp_path)
        cruise._cycle = MagicMock(side_effect=RuntimeError("disk gone"))

        await cruise.run()

        assert cruise._running is False


class TestCreateCruiseControl:
    """Tests for create_cruise_control."""

    def test_builds_from_settings(self, tmp_path):
        settings = _make_settings(
            tmp_path,
            route="greenfield",
            clarifications_strategy="skip",
            implementation_scope="p0_p1",
        )

        cruise, route, auto_config = create_cruise_control(settings)

        assert isinstance(cruise, CruiseControl)
        assert route == Route.GREENFIELD
        assert auto_config.clarifications_strategy == ClarificationsStrategy.SKIP
        assert auto_config.implementation_scope == ImplementationScope.P0_P1

    def test_route_is_required(self, tmp_path):
        with pytest.raises(InvalidParameter) as exc_info:
            create_cruise_control(_make_settings(tmp_path))
        assert exc_info.value.param == "route"

    def test_invalid_scope_is_rejected(self, tmp_path):
        settings = _make_settings(tmp_path, route="brownfield", implementation_scope="p9")
        with pytest.raises(InvalidParameter):
            create_cruise_control(settings)

    def test_project_outside_root_is_rejected(self, tmp_path):
        inside = tmp_path / "inside"
        inside.mkdir()
        settings = _make_settings(
            tmp_path, allowed_roots=[str(inside)], route="brownfield"
        )
        with pytest.raises(InvalidPath):
            create_cruise_control(settings)
        assert not (tmp_path / ".gearshift-state.json").exists()
