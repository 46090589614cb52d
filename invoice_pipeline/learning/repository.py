"""Persistence for learned supplier algorithms.

The learning manager depends only on the AlgorithmRepository protocol; the
host application picks the backing store. Keys are normalised supplier names.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from invoice_pipeline.learning.schema import LearnedAlgorithm

logger = logging.getLogger(__name__)


class AlgorithmRepository(Protocol):
    """Keyed store of LearnedAlgorithm objects."""

    def get(self, supplier_key: str) -> LearnedAlgorithm | None: ...

    def put(self, supplier_key: str, algorithm: LearnedAlgorithm) -> None: ...

    def delete(self, supplier_key: str) -> bool: ...

    def list_all(self) -> dict[str, LearnedAlgorithm]: ...

    def clear(self) -> None: ...


class InMemoryAlgorithmRepository:
    """Process-local store, used in tests and as a default."""

    def __init__(self) -> None:
        self._algorithms: dict[str, LearnedAlgorithm] = {}

    def get(self, supplier_key: str) -> LearnedAlgorithm | None:
        return self._algorithms.get(supplier_key)

    def put(self, supplier_key: str, algorithm: LearnedAlgorithm) -> None:
        self._algorithms[supplier_key] = algorithm

    def delete(self, supplier_key: str) -> bool:
        return self._algorithms.pop(supplier_key, None) is not None

    def list_all(self) -> dict[str, LearnedAlgorithm]:
        return dict(self._algorithms)

    def clear(self) -> None:
        self._algorithms.clear()


class JsonFileAlgorithmRepository:
    """Store every algorithm in a single JSON document on disk.

    The file is read once on construction and rewritten atomically on every
    change. Last writer wins.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._algorithms: dict[str, LearnedAlgorithm] = self._load()

    def _load(self) -> dict[str, LearnedAlgorithm]:
        if not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as handle:
            payload = json.load(handle)
        algorithms = {}
        for key, data in payload.items():
            algorithms[key] = LearnedAlgorithm.model_validate(data)
        logger.info(f"Loaded {len(algorithms)} learned algorithms from {self.path}")
        return algorithms

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {key: algo.model_dump(mode="json") for key, algo in self._algorithms.items()}
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_name, self.path)

    def get(self, supplier_key: str) -> LearnedAlgorithm | None:
        return self._algorithms.get(supplier_key)

    def put(self, supplier_key: str, algorithm: LearnedAlgorithm) -> None:
        self._algorithms[supplier_key] = algorithm
        self._save()

    def delete(self, supplier_key: str) -> bool:
        removed = self._algorithms.pop(supplier_key, None) is not None
        if removed:
            self._save()
        return removed

    def list_all(self) -> dict[str, LearnedAlgorithm]:
        return dict(self._algorithms)

    def clear(self) -> None:
        self._algorithms.clear()
        self._save()
