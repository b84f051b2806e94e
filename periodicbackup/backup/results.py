"""
Structured results for best-effort operations.

Per-item failures (one archive, one location, one backup) do not abort the
enclosing loop; they are collected here next to the successes.
"""

from dataclasses import dataclass, field
from typing import List


@dataclass
class ItemFailure:
    item: str
    error: str


@dataclass
class OperationResult:
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def add_success(self, item: str):
        self.succeeded.append(item)

    def add_skip(self, item: str):
        self.skipped.append(item)

    def add_failure(self, item: str, error):
        self.failures.append(ItemFailure(item=item, error=str(error)))

    def to_dict(self) -> dict:
        return {
            'succeeded': list(self.succeeded),
            'skipped': list(self.skipped),
            'failures': [{'item': f.item, 'error': f.error} for f in self.failures],
        }
