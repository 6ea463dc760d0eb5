"""Shared test fixtures."""

from pathlib import Path

import pytest

from subforge.models import TranscriptSegment

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def sample_manifest_path() -> Path:
    return FIXTURES_DIR / "sample_manifest.json"


@pytest.fixture
def segments() -> list[TranscriptSegment]:
    return [
        TranscriptSegment(start=0.0, end=2.0, text="Hello world"),
        TranscriptSegment(start=2.5, end=4.2, text="Second caption, with a comma"),
    ]
