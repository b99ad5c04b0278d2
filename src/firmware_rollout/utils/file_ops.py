"""File helpers for JSON records and JSON-lines logs."""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


# Serializes appends to the same JSON-lines file from concurrent host workers
_append_lock = threading.Lock()


def atomic_write_json(file_path: Path, data: Dict[str, Any]) -> None:
    """
    Write JSON data to a file atomically.

    The data goes to a temporary file in the destination directory which is
    then moved into place, so readers never observe a partial record.

    Args:
        file_path: Destination file path
        data: Dictionary to write as JSON
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=file_path.parent,
        prefix=f".{file_path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, file_path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def read_json(file_path: Path) -> Dict[str, Any]:
    """
    Read JSON data from a file.

    Raises:
        FileNotFoundError: If file doesn't exist
        json.JSONDecodeError: If file contains invalid JSON
    """
    with open(file_path, 'r') as f:
        return json.load(f)


def safe_read_json(file_path: Path, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Read JSON data from a file, returning default if file doesn't exist.

    Args:
        file_path: Path to JSON file
        default: Value returned when the file is missing

    Returns:
        Dictionary containing JSON data or default value

    Raises:
        ValueError: If the file exists but is not valid JSON
    """
    if default is None:
        default = {}

    try:
        return read_json(file_path)
    except FileNotFoundError:
        return default
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {file_path}: {e}")


def append_json_line(file_path: Path, entry: Dict[str, Any]) -> None:
    """
    Append one JSON document as a line to an append-only log.

    Args:
        file_path: JSON-lines file path
        entry: Entry to append
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(entry, sort_keys=True)

    with _append_lock:
        with open(file_path, 'a') as f:
            f.write(line + "\n")
            f.flush()


def iter_json_lines(file_path: Path) -> Iterator[Dict[str, Any]]:
    """Yield the entries of a JSON-lines file, skipping blank lines."""
    with open(file_path, 'r') as f:
        for line in f:
            line = line.strip()
            if line:
                yield json.loads(line)


def read_json_lines(file_path: Path) -> List[Dict[str, Any]]:
    """
    Read all entries of a JSON-lines file.

    Returns:
        List of entries, empty if the file does not exist
    """
    try:
        return list(iter_json_lines(file_path))
    except FileNotFoundError:
        return []


def ensure_directory_structure(base_path: Path, directories: List[str]) -> None:
    """
    Ensure all required directories exist.

    Args:
        base_path: Base directory path
        directories: Subdirectory paths relative to base_path
    """
    for directory in directories:
        (base_path / directory).mkdir(parents=True, exist_ok=True)
