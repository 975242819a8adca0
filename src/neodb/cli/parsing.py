"""Input parsing utilities for CLI commands."""

import json
from pathlib import Path
from typing import Any

from neodb.core.types import EntityDefinition


def read_json_file(path: str) -> Any:
    """Read a JSON document from file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON value

    Raises:
        FileNotFoundError: If file doesn't exist
        json.JSONDecodeError: If file contains invalid JSON
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with file_path.open("r") as f:
        return json.load(f)


def read_entities_file(path: str) -> list[EntityDefinition]:
    """Read entity definitions from a JSON file.

    The file holds either a list of entity definitions or an object with an
    ``entities`` key (the shape the app generator emits).

    Args:
        path: Path to JSON file

    Returns:
        Validated entity definitions

    Raises:
        ValueError: If the document has neither shape
    """
    document = read_json_file(path)
    if isinstance(document, dict):
        if "entities" not in document:
            raise ValueError(
                f"{path} must contain a list of entities or an object with an 'entities' key"
            )
        document = document["entities"]
    if not isinstance(document, list):
        raise ValueError(f"'entities' in {path} must be a list, got {type(document).__name__}")
    return [EntityDefinition.model_validate(item) for item in document]
