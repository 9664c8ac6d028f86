"""Run-level counters for recovered anomalies and coercion failures."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from rich.table import Table

MAX_MESSAGES = 50


@dataclass
class Diagnostics:
    anomalies: Counter = field(default_factory=Counter)
    coercions: Counter = field(default_factory=Counter)
    messages: List[str] = field(default_factory=list)

    def _note(self, message: str) -> None:
        if len(self.messages) < MAX_MESSAGES:
            self.messages.append(message)

    def anomaly(self, document_id: str, section: str, message: str) -> None:
        self.anomalies[section] += 1
        self._note(f"[{document_id}] {section}: {message}")

    def coercion(self, document_id: str, section: str, column: str, message: str) -> None:
        self.coercions[(section, column)] += 1
        self._note(f"[{document_id}] {section}.{column}: {message}")

    def merge(self, other: "Diagnostics") -> "Diagnostics":
        self.anomalies.update(other.anomalies)
        self.coercions.update(other.coercions)
        for message in other.messages:
            self._note(message)
        return self

    @property
    def total(self) -> int:
        return sum(self.anomalies.values()) + sum(self.coercions.values())

    def summary(self) -> Dict[str, Any]:
        return {
            "anomalies": dict(self.anomalies),
            "coercions": {
                f"{section}.{column}": count
                for (section, column), count in self.coercions.items()
            },
        }

    def render(self) -> Table:
        table = Table(title="Diagnostics")
        table.add_column("Kind")
        table.add_column("Location")
        table.add_column("Count", justify="right")
        rows: List[Tuple[str, str, int]] = [
            ("anomaly", section, count) for section, count in sorted(self.anomalies.items())
        ]
        rows.extend(
            ("coercion", f"{section}.{column}", count)
            for (section, column), count in sorted(self.coercions.items())
        )
        for kind, location, count in rows:
            table.add_row(kind, location, str(count))
        return table
