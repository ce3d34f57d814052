#
# src/testrelay/coverage/models.py
#
"""
Coverage records attached to a test run, one FileCoverage per source file.
All lines and characters are 0-based.
"""

from typing import Any

from attrs import define, field

from testrelay.model.node import Range


@define(frozen=True, slots=True)
class BranchCoverage:
    """One arm of a conditional, e.g. ``if then`` or ``if else``."""
    label: str
    executed: int
    range: Range

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "executed": self.executed, "location": self.range.to_dict()}


@define(frozen=True, slots=True)
class StatementCoverage:
    line: int
    executed: int
    character: int = 0
    branches: tuple[BranchCoverage, ...] = field(factory=tuple, converter=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "location": {"line": self.line, "character": self.character},
            "branches": [branch.to_dict() for branch in self.branches],
        }


@define(frozen=True, slots=True)
class DeclarationCoverage:
    name: str
    executed: int
    range: Range

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "executed": self.executed, "location": self.range.to_dict()}


@define(frozen=True, slots=True)
class FileCoverage:
    uri: str
    statements: tuple[StatementCoverage, ...] = field(factory=tuple, converter=tuple)
    declarations: tuple[DeclarationCoverage, ...] = field(factory=tuple, converter=tuple)

    @property
    def covered_lines(self) -> int:
        return sum(1 for statement in self.statements if statement.executed > 0)

    @property
    def percent_covered(self) -> float:
        if not self.statements:
            return 100.0
        return 100.0 * self.covered_lines / len(self.statements)

    def to_dict(self) -> dict[str, Any]:
        return {
            "statements": [statement.to_dict() for statement in self.statements],
            "declarations": [declaration.to_dict() for declaration in self.declarations],
        }
