"""
Fixture File Source

Read-only source loading desired records from a YAML or JSON file of the form
``{kind: [record, ...]}``.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from statesync.reconciliation.errors import FetchFailure
from statesync.reconciliation.models import Filter, Origin, Snapshot
from statesync.sources.base import StateSource

logger = logging.getLogger(__name__)


class FileSource(StateSource):
    """Snapshot reader over a checked-in fixture file."""

    def __init__(self, name: str, path: str):
        super().__init__(name)
        self.path = Path(path)
        self._data: Optional[Dict[str, List[Dict[str, Any]]]] = None

    def acquire(self) -> None:
        # Re-read on every run so edits to the fixture are picked up
        self._data = None
        super().acquire()

    def fetch(self, kind: str, filter: Optional[Filter] = None, origin: Origin = Origin.DESIRED) -> Snapshot:
        data = self._load()

        if kind not in data:
            raise FetchFailure(f"{self.path} has no records for kind '{kind}'", origin=self.name, kind=kind)

        records = data[kind] or []
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise FetchFailure(
                f"Records for '{kind}' in {self.path} must be a list of mappings",
                origin=self.name,
                kind=kind,
            )

        if filter is not None and not filter.is_empty():
            records = [record for record in records if filter.matches(record)]

        logger.info(f"Loaded {len(records)} {kind} records from {self.path}")
        return Snapshot.capture(kind, origin, self.name, records)

    def _load(self) -> Dict[str, List[Dict[str, Any]]]:
        if self._data is not None:
            return self._data

        try:
            with self.path.open("r", encoding="utf-8") as f:
                if self.path.suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except OSError as e:
            raise FetchFailure(f"Cannot read {self.path}: {e}", origin=self.name) from e
        except (ValueError, yaml.YAMLError) as e:
            raise FetchFailure(f"Cannot parse {self.path}: {e}", origin=self.name) from e

        if not isinstance(data, dict):
            raise FetchFailure(f"{self.path} must contain a mapping of kind -> records", origin=self.name)

        self._data = data
        return data
