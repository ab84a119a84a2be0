"""Tests for the qmdtree command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from qmdtree import __version__
from qmdtree.cli import main


@pytest.fixture
def workspace(tmp_path: Path, sample_xml: str, sample_qmd: str, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("QMDTREE_CACHE_DIR", str(tmp_path / "cache"))
    (tmp_path / "index.qmd").write_text(sample_qmd, encoding="utf-8")
    (tmp_path / "index.xml").write_text(sample_xml, encoding="utf-8")
    return tmp_path


def _invoke(*args: str):
    return CliRunner().invoke(main, list(args), catch_exceptions=False)


def test_version() -> None:
    result = _invoke("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_index_prints_block_map(workspace: Path) -> None:
    result = _invoke("index", "index.qmd")

    assert result.exit_code == 0
    blocks = json.loads(result.output)
    assert [b["key"] for b in blocks] == ["__YAML_BLOCK__", "fig-plot"]
    assert blocks[1]["kind"] == "chunk"


def test_comments_prints_threads(workspace: Path) -> None:
    source = workspace / "index.qmd"
    source.write_text(
        source.read_text(encoding="utf-8")
        + '\n<!-- Comments Appendix -->\n<div id="quartorium-comments" style="display:none;">\n'
        '```json\n{"comments": [{"id": "c-1", "status": "resolved", "thread": []}]}\n```\n</div>\n',
        encoding="utf-8",
    )
    result = _invoke("comments", "index.qmd")

    assert result.exit_code == 0
    assert json.loads(result.output)[0]["status"] == "resolved"


def test_view_save_preview(workspace: Path, sample_qmd: str) -> None:
    result = _invoke("view", "index.qmd", "--xml", "index.xml", "--doc-id", "paper", "--version", "v1", "-o", "tree.json")
    assert result.exit_code == 0
    payload = json.loads((workspace / "tree.json").read_text(encoding="utf-8"))
    assert payload["version"] == "v1"
    assert payload["tree"]["type"] == "doc"

    result = _invoke("save", "tree.json", "index.qmd", "-o", "out/index.qmd")
    assert result.exit_code == 0
    saved = (workspace / "out" / "index.qmd").read_text(encoding="utf-8")
    assert "[@knuth84]" in saved
    assert '#| fig-cap: "A simple plot"' in saved

    result = _invoke("preview", "tree.json", "-o", "page.html", "--title", "Review copy")
    assert result.exit_code == 0
    html = (workspace / "page.html").read_text(encoding="utf-8")
    assert "<title>Review copy</title>" in html
    assert "Literate programming" in html


def test_view_reports_malformed_xml(workspace: Path) -> None:
    (workspace / "bad.xml").write_text("<article><body>", encoding="utf-8")
    result = _invoke("view", "index.qmd", "--xml", "bad.xml", "-o", "tree.json")

    assert result.exit_code == 1
    assert "not well-formed" in result.output


def test_save_rejects_non_tree(workspace: Path) -> None:
    (workspace / "list.json").write_text("[1, 2]", encoding="utf-8")
    result = _invoke("save", "list.json", "index.qmd", "-o", "x.qmd")

    assert result.exit_code == 1
    assert "does not hold a document tree" in result.output
