"""gearshift - durable gear pipeline and roadmap prioritizer.

Usage:
    GEARSHIFT_ROUTE=brownfield python main.py
    # or via entry points:
    gearshift-cruise
    gearshift-plan
"""

import json
import sys

from gearshift.collaborators import CommandCollaborator
from gearshift.config import Settings
from gearshift.cruise import configure_logging, run_with_signal_handling
from gearshift.inputs import load_project_context, load_roadmap_items
from gearshift.path_guard import PathGuard
from gearshift.pipeline import StageRunner
from gearshift.prioritizer import Prioritizer
from gearshift.state_store import StateStore


def main() -> None:
    """Entry point for cruise control."""
    print("gearshift - Cruise Control")
    print("==========================")
    print("Shifting through all gears...")
    print("Press Ctrl+C to stop after the current gear.\n")
    run_with_signal_handling()


def plan() -> None:
    """Entry point that prints the prioritized roadmap plan as JSON."""
    settings = Settings()
    configure_logging(settings.log_level)

    guard = PathGuard.from_settings(settings)
    directory = guard.validate_directory(settings.project_dir)
    context = load_project_context(guard.validate_file_path(directory, settings.context_file))

    if settings.roadmap_file:
        items = load_roadmap_items(guard.validate_file_path(directory, settings.roadmap_file))
        roadmap = Prioritizer().plan(items, context)
    else:
        store = StateStore(directory, settings, guard)
        runner = StageRunner(store, CommandCollaborator(settings), settings)
        roadmap = runner.plan_roadmap(context)

    json.dump(roadmap.to_dict(), sys.stdout, indent=2)
    sys.stdout.write("\n")


if __name__ == "__main__":
    main()
