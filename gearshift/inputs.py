"""YAML loaders for project context and roadmap items."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from gearshift.models import ProjectContext, RoadmapItem, validation_messages

logger = structlog.get_logger()


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        logger.info("input_file_not_found", path=str(path))
        return None

    try:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("yaml_parse_error", path=str(path), error=str(e))
        return None


def _string_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip())


def load_project_context(path: str | Path) -> ProjectContext:
    """Load the project context from the ``project`` key of a YAML file.

    Missing or malformed files yield an empty context.

    Args:
        path: Path to the YAML file.

    Returns:
        The parsed ProjectContext.
    """
    data = _read_yaml(Path(path))
    if not isinstance(data, dict) or not isinstance(data.get("project"), dict):
        logger.warning("missing_project_key", path=str(path))
        return ProjectContext()

    project = data["project"]
    lines_of_code = project.get("lines_of_code", 0)
    if not isinstance(lines_of_code, int) or isinstance(lines_of_code, bool) or lines_of_code < 0:
        logger.warning("invalid_lines_of_code", value=lines_of_code)
        lines_of_code = 0

    context = ProjectContext(
        name=str(project.get("name") or ""),
        language=str(project.get("language") or ""),
        frameworks=_string_list(project.get("frameworks")),
        lines_of_code=lines_of_code,
        current_features=_string_list(project.get("current_features")),
    )
    logger.info(
        "project_context_loaded",
        language=context.language,
        frameworks=len(context.frameworks),
        lines_of_code=context.lines_of_code,
    )
    return context


def load_roadmap_items(path: str | Path) -> list[RoadmapItem]:
    """Load roadmap items from the ``items`` key of a YAML file.

    Invalid entries and duplicate ids are logged and skipped.
    """
    data = _read_yaml(Path(path))
    if not isinstance(data, dict) or "items" not in data:
        logger.warning("missing_items_key", path=str(path))
        return []

    entries = data["items"]
    if not isinstance(entries, list):
        logger.warning("items_not_list", path=str(path))
        return []

    items: list[RoadmapItem] = []
    seen_ids: set[str] = set()
    for entry in entries:
        if not isinstance(entry, dict):
            logger.warning("invalid_roadmap_entry", entry=entry)
            continue

        try:
            item = RoadmapItem.from_dict(entry)
        except ValidationError as e:
            logger.warning(
                "invalid_roadmap_entry", entry=entry.get("id"), errors=validation_messages(e)
            )
            continue

        if item.id in seen_ids:
            logger.warning("duplicate_roadmap_id", id=item.id)
            continue

        seen_ids.add(item.id)
        items.append(item)

    logger.info("roadmap_items_loaded", count=len(items))
    return items
