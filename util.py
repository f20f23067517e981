"""Shared helpers: mm to pixels, value normalisation, file naming and atomic writes."""
from __future__ import annotations

import logging
import math
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Union

MM_PER_INCH = 25.4
POINTS_PER_INCH = 72.0

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def mm_to_pixels(value: float, dpi: float) -> float:
    return value / MM_PER_INCH * dpi


def is_missing(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, float):
        return math.isnan(value)
    return False


def normalise_string(value: object, default: str = "") -> str:
    if is_missing(value):
        return default
    value_str = str(value).strip()
    return value_str if value_str else default


def sanitize_filename_component(value: object, fallback: str) -> str:
    value = normalise_string(value)
    if not value:
        value = fallback
    sanitized = re.sub(r"[^A-Za-z0-9]+", "_", value)
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    return sanitized or fallback


def unique_filenames(names: Iterable[str]) -> List[str]:
    """Return ``names`` with ``_2``, ``_3``... appended to repeated stems."""

    seen: Dict[str, int] = {}
    result = []
    for name in names:
        stem, dot, extension = name.rpartition(".")
        if not dot:
            stem, extension = name, ""
        key = name.lower()
        count = seen.get(key, 0) + 1
        seen[key] = count
        if count == 1:
            result.append(name)
            continue
        candidate = f"{stem}_{count}" + (f".{extension}" if extension else "")
        while candidate.lower() in seen:
            count += 1
            candidate = f"{stem}_{count}" + (f".{extension}" if extension else "")
        seen[key] = count
        seen[candidate.lower()] = 1
        result.append(candidate)
    return result


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> Path:
    """Write ``data`` to ``path`` through a temporary sibling file.

    The destination either keeps its previous content or receives the full
    payload; a half-written file is never left behind.
    """

    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    handle, temp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".part", dir=str(destination.parent)
    )
    try:
        with os.fdopen(handle, "wb") as stream:
            stream.write(data)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(temp_name, destination)
    except BaseException:
        if os.path.exists(temp_name):
            os.remove(temp_name)
        raise
    return destination


def configure_logging(verbose: bool = False, stream=None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=stream,
    )
