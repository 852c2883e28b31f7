from __future__ import annotations

from typing import List, Optional

from common.errors import DuplicateName, NotFound

from .models import AppConfig, S3DataSource


class DataSourceCatalog:
    """
    CRUD over `AppConfig.data_sources`, keyed by name.

    The catalog mutates the config it was given and never persists. Callers
    save afterwards; `AppContext` mutates a copy, saves it, and only then
    swaps the copy in.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def _index(self, name: str) -> Optional[int]:
        for i, ds in enumerate(self._config.data_sources):
            if ds.name == name:
                return i
        return None

    def names(self) -> List[str]:
        return [ds.name for ds in self._config.data_sources]

    def list(self) -> List[S3DataSource]:
        return [ds.model_copy() for ds in self._config.data_sources]

    def get(self, name: str) -> S3DataSource:
        idx = self._index(name)
        if idx is None:
            raise NotFound(f"No data source named '{name}'")
        return self._config.data_sources[idx].model_copy()

    def add(self, ds: S3DataSource) -> None:
        if self._index(ds.name) is not None:
            raise DuplicateName(f"Data source '{ds.name}' already exists")
        self._config.data_sources.append(ds.model_copy())

    def remove(self, name: str) -> S3DataSource:
        idx = self._index(name)
        if idx is None:
            raise NotFound(f"No data source named '{name}'")
        return self._config.data_sources.pop(idx)

    def update(self, name: str, ds: S3DataSource) -> None:
        """Replace the entry `name` with `ds`, keeping its position.

        Renaming onto another existing entry raises `DuplicateName`. The
        original id is kept when `ds` was built without one.
        """
        idx = self._index(name)
        if idx is None:
            raise NotFound(f"No data source named '{name}'")
        if ds.name != name and self._index(ds.name) is not None:
            raise DuplicateName(f"Data source '{ds.name}' already exists")

        current = self._config.data_sources[idx]
        replacement = ds.model_copy()
        if "id" not in ds.model_fields_set:
            replacement.id = current.id
        self._config.data_sources[idx] = replacement
