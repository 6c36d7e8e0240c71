import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def read_json_object(path: str | Path) -> dict[str, Any] | None:
    """Return the JSON object stored at ``path``, or None if there is none.

    A missing file, unparsable content or a top-level value that is not an
    object all count as "none"; the last two are logged.
    """
    target = Path(path)
    try:
        text = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring corrupt JSON file {target}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {target}: expected a JSON object, got {type(data).__name__}")
        return None
    return data


def write_json_atomic(path: str | Path, data: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def remove_file(path: str | Path) -> bool:
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
