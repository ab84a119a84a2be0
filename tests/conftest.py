from __future__ import annotations

from pathlib import Path

import pytest

DATA_DIR = Path(__file__).parent / "data"


@pytest.fixture
def sample_xml() -> str:
    """Quarto JATS output for sample.qmd (top-level article + notebook sub-article)."""
    return (DATA_DIR / "sample.xml").read_text(encoding="utf-8")


@pytest.fixture
def sample_qmd() -> str:
    return (DATA_DIR / "sample.qmd").read_text(encoding="utf-8")
