"""
Labels & Remedies
=================
``LabelMap`` turns the exporter's ``{"<index>": "<class>"}`` mapping into a
list whose position *i* is model output *i*.  ``RemedyCatalog`` maps a class
name to advice text and never fails a lookup.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from leafcare_server.errors import ManifestError
from leafcare_server.schemas import ClassIndexFile, RemedyFile


logger = logging.getLogger("leafcare_server.labels")

UNKNOWN_LABEL = "Unknown"
DEFAULT_SOLUTION = "Use proper fertilizers and care."
DEFAULT_PESTICIDE = "Apply recommended pesticide."


def _read_json(path: Path, what: str) -> object:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ManifestError(f"{what} not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestError(f"Cannot read {what} {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ManifestError(f"{what} {path} is not valid JSON: {exc}") from exc


# =============================================================================
# LabelMap
# =============================================================================

class LabelMap:
    """Class names ordered by numeric class index."""

    def __init__(self, labels: list[str]) -> None:
        self._labels = list(labels)

    @classmethod
    def build(cls, class_index_to_name: Mapping[str | int, str]) -> LabelMap:
        """
        Order labels by the integer value of their keys.

        ``{"2": "C", "0": "A", "1": "B"}`` -> ``["A", "B", "C"]``.  The
        insertion order of the mapping is irrelevant.  Keys must cover
        ``0..n-1`` exactly, otherwise a label would sit at the wrong output
        position.
        """
        by_index: dict[int, str] = {}
        for key, name in class_index_to_name.items():
            try:
                index = int(key)
            except (TypeError, ValueError) as exc:
                raise ManifestError(f"Class index {key!r} is not an integer") from exc
            if index in by_index:
                raise ManifestError(f"Class index {index} appears more than once")
            by_index[index] = name

        ordered = sorted(by_index)
        if ordered != list(range(len(ordered))):
            raise ManifestError(
                f"Class indices must be contiguous from 0, got {ordered[:5]}{'…' if len(ordered) > 5 else ''}"
            )
        return cls([by_index[i] for i in ordered])

    @classmethod
    def load(cls, path: Path | str) -> LabelMap:
        path = Path(path)
        payload = _read_json(path, "Class index file")
        try:
            mapping = ClassIndexFile.model_validate(payload).root
        except ValidationError as exc:
            raise ManifestError(f"Class index file {path} failed validation: {exc}") from exc

        labels = cls.build(mapping)
        logger.info("✓ Labels loaded: %d", len(labels))
        return labels

    def resolve(self, index: int) -> str:
        """Label at ``index``, or ``"Unknown"`` when out of range."""
        if 0 <= index < len(self._labels):
            return self._labels[index] or UNKNOWN_LABEL
        return UNKNOWN_LABEL

    def __contains__(self, index: object) -> bool:
        return isinstance(index, int) and 0 <= index < len(self._labels)

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self) -> Iterator[str]:
        return iter(self._labels)

    def as_list(self) -> list[str]:
        return list(self._labels)


# =============================================================================
# RemedyCatalog
# =============================================================================

@dataclass(frozen=True)
class RemedyEntry:
    label: str
    solution: str
    pesticide: str


class RemedyCatalog:
    """Label -> remedy texts, with a fixed default for anything missing."""

    def __init__(self, entries: Mapping[str, RemedyEntry] | None = None) -> None:
        self._entries = dict(entries or {})

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Mapping[str, str | None]]) -> RemedyCatalog:
        entries = {
            label: RemedyEntry(
                label=label,
                solution=(fields.get("solution") or "").strip() or DEFAULT_SOLUTION,
                pesticide=(fields.get("pesticide") or "").strip() or DEFAULT_PESTICIDE,
            )
            for label, fields in mapping.items()
        }
        return cls(entries)

    @classmethod
    def load(cls, path: Path | str) -> RemedyCatalog:
        """
        Read ``diseaseInfo.json``.  A missing file yields an empty catalog;
        a present but malformed file is a ``ManifestError``.
        """
        path = Path(path)
        if not path.exists():
            logger.info("No remedy file at %s; using default advice for every class", path)
            return cls()

        payload = _read_json(path, "Remedy file")
        try:
            parsed = RemedyFile.model_validate(payload).root
        except ValidationError as exc:
            raise ManifestError(f"Remedy file {path} failed validation: {exc}") from exc

        catalog = cls.from_mapping({label: fields.model_dump() for label, fields in parsed.items()})
        logger.info("✓ Disease info loaded: %d entries", len(catalog))
        return catalog

    def __contains__(self, label: object) -> bool:
        return label in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, label: str) -> RemedyEntry:
        entry = self._entries.get(label)
        if entry is None:
            return RemedyEntry(label=label, solution=DEFAULT_SOLUTION, pesticide=DEFAULT_PESTICIDE)
        return entry
