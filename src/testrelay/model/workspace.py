#
# src/testrelay/model/workspace.py
#
"""
Workspace folders: the roots test discovery runs against.
"""

from pathlib import Path, PurePath

from attrs import define, field


def _resolved(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


@define(frozen=True, slots=True)
class WorkspaceFolder:
    name: str
    path: Path = field(converter=_resolved)

    @property
    def uri(self) -> str:
        return self.path.as_uri()

    def contains(self, path: Path) -> bool:
        return path.resolve().is_relative_to(self.path)

    def relative(self, path: Path) -> PurePath:
        return PurePath(path.resolve().relative_to(self.path))
