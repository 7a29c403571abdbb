"""JSON file persistence: one record collection per entity type."""

import json
from pathlib import Path

COLLECTIONS = ("projects", "sessions", "events")


def collection_path(data_dir: Path, name: str) -> Path:
    return Path(data_dir) / f"{name}.json"


def read_collection(data_dir: Path, name: str) -> list[dict]:
    """Read a whole collection. A collection that does not exist yet is empty.

    Any other failure (permissions, corrupt JSON) propagates.
    """
    try:
        content = collection_path(data_dir, name).read_text()
    except FileNotFoundError:
        return []
    records = json.loads(content)
    if not isinstance(records, list):
        raise ValueError(f"Collection '{name}' is not a list of records")
    return records


def write_collection(data_dir: Path, name: str, records: list[dict]) -> None:
    """Replace a whole collection on disk."""
    collection_path(data_dir, name).write_text(json.dumps(records, indent=2))
