"""Tests for settings loading."""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path

import pytest

from qmdtree.config import DEFAULT_MARK_PRECEDENCE, Settings, find_config_file, load_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for f in fields(Settings):
        monkeypatch.delenv(f"QMDTREE_{f.name.upper()}", raising=False)


def test_defaults() -> None:
    settings = Settings()
    assert settings.quarto_bin == "quarto"
    assert settings.render_timeout == 600.0
    assert settings.mark_precedence == DEFAULT_MARK_PRECEDENCE
    assert settings.split_sentences is True
    assert settings.preserve_unreferenced_blocks is True


def test_load_from_yaml(tmp_path: Path) -> None:
    config = tmp_path / "qmdtree.yaml"
    config.write_text(
        "quarto_bin: /opt/quarto/bin/quarto\n"
        "render_timeout: 30\n"
        "cache_dir: cache\n"
        "split_sentences: false\n"
        "extra_abbreviations: [Appx, Suppl]\n",
        encoding="utf-8",
    )
    settings = load_settings(config)

    assert settings.quarto_bin == "/opt/quarto/bin/quarto"
    assert settings.render_timeout == 30.0
    assert settings.cache_dir == Path("cache")
    assert settings.split_sentences is False
    assert settings.extra_abbreviations == ("Appx", "Suppl")


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "qmdtree.yaml"
    config.write_text("quarto_bin: from-file\nsplit_sentences: true\n", encoding="utf-8")
    monkeypatch.setenv("QMDTREE_QUARTO_BIN", "from-env")
    monkeypatch.setenv("QMDTREE_SPLIT_SENTENCES", "no")
    monkeypatch.setenv("QMDTREE_MARK_PRECEDENCE", "link, comment")

    settings = load_settings(config)

    assert settings.quarto_bin == "from-env"
    assert settings.split_sentences is False
    assert settings.mark_precedence == ("link", "comment")


def test_unknown_keys_and_bad_yaml_are_ignored(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    config = tmp_path / "qmdtree.yaml"
    config.write_text("nonsense: 1\n", encoding="utf-8")
    assert load_settings(config) == Settings()
    assert any("Unknown setting" in r.message for r in caplog.records)

    config.write_text("- not\n- a mapping\n", encoding="utf-8")
    assert load_settings(config).quarto_bin == "quarto"


def test_find_config_file_searches_upward(tmp_path: Path) -> None:
    (tmp_path / "qmdtree.yaml").write_text("{}\n", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_config_file(nested) == (tmp_path / "qmdtree.yaml").resolve()
