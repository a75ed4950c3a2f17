from __future__ import annotations

from pathlib import Path

import pytest

from tests.fakes import RecordingReporter


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def write_yaml(tmp_path: Path):
    def _write(name: str, data) -> Path:
        import yaml

        path = tmp_path / name
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(data, f)
        return path

    return _write
