"""In-memory directive store with optional JSON persistence."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from models import WILDCARD_LAYER, Directive
from ranking import QueryCriteria

logger = logging.getLogger(__name__)


class DirectiveStore:
    """Keeps directives keyed by id and answers ranking queries.

    When ``path`` is given the store is loaded from it on start and the whole
    set is written back after every change.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._directives: Dict[str, Directive] = {}
        if self.path and self.path.exists():
            self._directives = {d.id: d for d in self._read_file(self.path)}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def query(self, criteria: QueryCriteria) -> List[Directive]:
        severities = set(criteria.severities)
        layers = {layer.lower() for layer in criteria.layers if layer and layer != WILDCARD_LAYER}
        topics = {t.lower() for t in criteria.topics}
        technologies = {t.lower() for t in criteria.technologies}

        matches: List[Directive] = []
        with self._lock:
            for directive in self._directives.values():
                if directive.severity not in severities:
                    continue
                if criteria.strict_layer and layers:
                    if not layers & {layer.lower() for layer in directive.layers}:
                        continue
                if topics or technologies:
                    topic_hit = bool(topics & {t.lower() for t in directive.topics})
                    tech_hit = bool(technologies & {t.lower() for t in directive.technologies})
                    if not (topic_hit or tech_hit):
                        continue
                matches.append(directive)
                if len(matches) >= criteria.limit:
                    break
        return matches

    def upsert(self, directives: Iterable[Directive]) -> Tuple[List[str], List[str]]:
        """Insert or replace directives. Returns ``(created_ids, updated_ids)``."""
        created: List[str] = []
        updated: List[str] = []
        with self._lock:
            for directive in directives:
                if directive.id in self._directives:
                    updated.append(directive.id)
                else:
                    created.append(directive.id)
                self._directives[directive.id] = directive
            self._persist()
        logger.info("Stored directives: %d created, %d updated", len(created), len(updated))
        return created, updated

    def delete(self, ids: Iterable[str]) -> List[str]:
        deleted: List[str] = []
        with self._lock:
            for directive_id in ids:
                if self._directives.pop(directive_id, None) is not None:
                    deleted.append(directive_id)
            if deleted:
                self._persist()
        return deleted

    def get(self, directive_id: str) -> Directive:
        with self._lock:
            try:
                return self._directives[directive_id]
            except KeyError:
                raise KeyError(f"Directive not found: {directive_id}") from None

    def all(self) -> List[Directive]:
        with self._lock:
            return list(self._directives.values())

    def count(self) -> int:
        with self._lock:
            return len(self._directives)

    def load_file(self, path: Path) -> Tuple[List[str], List[str]]:
        """Bulk import a JSON file holding a list of directives (or ``{"directives": [...]}``)."""
        return self.upsert(self._read_file(Path(path)))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _read_file(path: Path) -> List[Directive]:
        with open(path, "r", encoding="utf-8") as handle:
            raw: Any = json.load(handle)
        if isinstance(raw, dict):
            raw = raw.get("directives", [])
        if not isinstance(raw, list):
            raise ValueError(f"Expected a list of directives in {path}")

        directives: List[Directive] = []
        for entry in raw:
            try:
                directives.append(Directive.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed directive in %s: %s", path, exc)
        return directives

    def _persist(self):
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"directives": [d.to_dict() for d in self._directives.values()]}
        with open(self.path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
