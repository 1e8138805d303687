"""
JSON persistence helpers.

Documents are read wholesale and rewritten wholesale. Writes go to a
temporary file in the same directory and are renamed over the target,
so a reader never sees a half-written document.
"""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Union

from ..errors import NotFoundError, ParseError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def load_json(path: PathLike, default: Any) -> Any:
    """
    Load a JSON document, falling back to ``default`` if it is missing,
    unreadable, or of a different top-level type than the default.
    """
    path = Path(path)
    if not path.exists():
        return copy.deepcopy(default)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load {path}, starting empty: {e}")
        return copy.deepcopy(default)

    if default is not None and not isinstance(data, type(default)):
        logger.warning(
            f"Unexpected document type in {path}: "
            f"expected {type(default).__name__}, got {type(data).__name__}"
        )
        return copy.deepcopy(default)
    return data


def read_json(path: PathLike) -> Any:
    """Strict read for imports: raises NotFoundError or ParseError."""
    path = Path(path)
    if not path.exists():
        raise NotFoundError(f"File not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ParseError(f"Failed to parse file: {e}")


def write_json(path: PathLike, data: Any) -> None:
    """Atomically replace ``path`` with ``data`` serialized as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
