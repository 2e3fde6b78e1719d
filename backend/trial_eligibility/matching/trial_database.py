"""
Trial database loader.

The database is an export keyed by cluster:

    {"CLUSTER_AGE": {"cluster_code": "AGE", "criteria": [{id, nct_id, raw_text, ...}]}, ...}

Records are untrusted: unusable ones are logged and skipped. Only a database
that is not a mapping, or that yields no usable cluster at all, is an error.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from ..schemas.patient import ClusterCode
from ..schemas.trial import Criterion

logger = logging.getLogger(__name__)


class TrialDatabaseError(ValueError):
    """The trial database as a whole is unusable."""


class TrialDatabase:
    """Criteria indexed by trial, each tagged with its cluster."""

    def __init__(self, index: Optional[Dict[str, List[Tuple[ClusterCode, Criterion]]]] = None):
        self._index: Dict[str, List[Tuple[ClusterCode, Criterion]]] = index or {}

    @classmethod
    def from_mapping(cls, data: Any) -> "TrialDatabase":
        if not isinstance(data, Mapping):
            raise TrialDatabaseError(f"Trial database must be a mapping, got {type(data).__name__}")

        index: Dict[str, List[Tuple[ClusterCode, Criterion]]] = {}
        clusters_loaded = 0
        skipped = 0

        for key, cluster in data.items():
            if not str(key).startswith("CLUSTER_") or not isinstance(cluster, Mapping):
                continue
            code = ClusterCode.parse(cluster.get("cluster_code") or str(key)[len("CLUSTER_"):])
            records = cluster.get("criteria")
            if code is None or not isinstance(records, list):
                logger.warning("Skipping cluster %s: unknown code or no criteria list", key)
                continue
            clusters_loaded += 1

            for record in records:
                criterion = cls._load_record(record, code)
                if criterion is None:
                    skipped += 1
                    continue
                index.setdefault(criterion.nct_id, []).append((code, criterion))

        if clusters_loaded == 0:
            raise TrialDatabaseError("Trial database contains no usable CLUSTER_* entries")
        if skipped:
            logger.warning("Skipped %d unusable criterion records", skipped)
        logger.info("Loaded %d trials from %d clusters", len(index), clusters_loaded)
        return cls(index)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "TrialDatabase":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TrialDatabaseError(f"Cannot read trial database {path}: {e}") from e
        return cls.from_mapping(data)

    @staticmethod
    def _load_record(record: Any, code: ClusterCode) -> Optional[Criterion]:
        if not isinstance(record, Mapping):
            logger.warning("Skipping non-object criterion record in %s", code.value)
            return None
        try:
            criterion = Criterion.model_validate({**record, "cluster_code": code.value})
        except ValidationError as e:
            logger.warning("Skipping malformed criterion %r in %s: %s", record.get("id"), code.value, e)
            return None
        if not criterion.id or not criterion.nct_id:
            logger.warning("Skipping criterion without id/nct_id in %s", code.value)
            return None
        return criterion

    def trial_ids(self) -> List[str]:
        """Trial ids in load order."""
        return list(self._index)

    def criteria_for(self, nct_id: str) -> List[Tuple[ClusterCode, Criterion]]:
        return list(self._index.get(nct_id, []))

    def __contains__(self, nct_id: object) -> bool:
        return nct_id in self._index

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)
