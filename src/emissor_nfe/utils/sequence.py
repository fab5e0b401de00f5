from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock

from emissor_nfe import config as _config


def _sequence_file() -> Path:
    return _config.get_data_dir() / _config.get_env() / "sequence.json"


def _key(company_id: int, series: str) -> str:
    return f"{company_id}:{series}"


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during sequence read-modify-write."""
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(sf.with_suffix(".lock"))
    with lock:
        yield


def _load() -> dict[str, int]:
    sf = _sequence_file()
    if not sf.exists():
        return {}
    return json.loads(sf.read_text())


def _save(data: dict[str, int]) -> None:
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    tmp = sf.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, sf)


def next_number(company_id: int, series: str = _config.DEFAULT_SERIES) -> int:
    """Reserve and return the next NF-e number for the company and series."""
    with _locked():
        data = _load()
        key = _key(company_id, series)
        data[key] = data.get(key, 0) + 1
        _save(data)
        return data[key]
