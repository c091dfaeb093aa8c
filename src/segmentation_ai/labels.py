from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol


class LabelTable(Protocol):
    def label_count(self) -> int: ...
    def label_at(self, index: int) -> str: ...


class ListLabelTable:
    """In-memory label table, one class name per index."""

    def __init__(self, labels: Sequence[str]) -> None:
        self._labels: tuple[str, ...] = tuple(labels)

    @staticmethod
    def from_text(text: str) -> ListLabelTable:
        # One label per line; blank lines are not classes
        return ListLabelTable([ln.strip() for ln in text.splitlines() if ln.strip()])

    @staticmethod
    def from_path(path: Path) -> ListLabelTable:
        return ListLabelTable.from_text(path.read_text(encoding="utf-8"))

    def label_count(self) -> int:
        return len(self._labels)

    def label_at(self, index: int) -> str:
        if index < 0:
            raise IndexError(f"label index {index} is negative")
        return self._labels[index]


def label_or_default(table: LabelTable, index: int) -> str:
    if 0 <= index < table.label_count():
        return table.label_at(index)
    return f"Class {index}"
