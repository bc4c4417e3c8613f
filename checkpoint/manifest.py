"""
Term manifest publishing.

    index.tmp.json   provisional: every term this run intends to finish
    index.json       canonical: the only file downstream readers should open

stage() writes the provisional file at the start of a run. promote() renames
it over index.json, and only does so once every staged term has been marked
complete. Until then the previous index.json stays exactly as it was.
"""

import logging
import os
from pathlib import Path

from pydantic import BaseModel, ValidationError

from checkpoint.files import write_json_atomic

log = logging.getLogger(__name__)

PROVISIONAL_NAME = "index.tmp.json"
CANONICAL_NAME = "index.json"


class TermEntry(BaseModel):
    term: str
    name: str


class Manifest(BaseModel):
    terms: list[TermEntry]


class ManifestPublisher:
    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.provisional_path = data_dir / PROVISIONAL_NAME
        self.canonical_path = data_dir / CANONICAL_NAME
        self._staged: list[TermEntry] = []
        self._completed: set[str] = set()

    def stage(self, terms: list[TermEntry]) -> None:
        self._staged = list(terms)
        self._completed = set()
        manifest = Manifest(terms=self._staged)
        write_json_atomic(self.provisional_path, manifest.model_dump(), indent=2)
        log.info("Staged manifest with %d terms → %s", len(terms), self.provisional_path.name)

    def complete(self, term_code: str) -> None:
        self._completed.add(term_code)

    def pending(self) -> list[str]:
        return [t.term for t in self._staged if t.term not in self._completed]

    def promote(self) -> bool:
        """Atomically replace index.json with the staged manifest if every term completed."""
        pending = self.pending()
        if not self._staged or pending:
            log.warning("Not promoting manifest; incomplete terms: %s", ", ".join(pending) or "none staged")
            return False
        if not self.provisional_path.exists():
            log.warning("%s not found, cannot promote.", PROVISIONAL_NAME)
            return False
        os.replace(self.provisional_path, self.canonical_path)
        log.info("Promoted %s → %s", PROVISIONAL_NAME, CANONICAL_NAME)
        return True

    def discard(self) -> None:
        self.provisional_path.unlink(missing_ok=True)

    def read_canonical(self) -> Manifest | None:
        if not self.canonical_path.exists():
            return None
        try:
            return Manifest.model_validate_json(self.canonical_path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            log.warning("Could not parse %s: %s", CANONICAL_NAME, exc)
            return None
