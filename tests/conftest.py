from __future__ import annotations

from collections.abc import Sequence
from fnmatch import fnmatch

import pytest

from current_settings.cli import SettingsConfig


class FakeFiles:
    """In-memory FileReader keyed by absolute host path."""

    def __init__(self, contents: dict[str, str] | None = None) -> None:
        self.contents = dict(contents or {})
        self.reads: list[str] = []

    def exists(self, path: str) -> bool:
        return path in self.contents

    def read_text(self, path: str) -> str:
        self.reads.append(path)
        return self.contents[path]

    def glob(self, pattern: str) -> list[str]:
        return [path for path in self.contents if fnmatch(path, pattern)]


class FakeRunner:
    def __init__(self, output: str | None = "8\n") -> None:
        self.output = output
        self.calls: list[tuple[tuple[str, ...], float]] = []

    def run(self, command: Sequence[str], timeout: float) -> str | None:
        self.calls.append((tuple(command), timeout))
        return self.output


@pytest.fixture
def config(tmp_path) -> SettingsConfig:
    return SettingsConfig(working_directory=tmp_path / "out")
