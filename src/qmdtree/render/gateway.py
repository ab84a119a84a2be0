"""Run Quarto on an isolated project snapshot and cache the JATS output."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from qmdtree.config import Settings
from qmdtree.errors import RenderFailure

logger = logging.getLogger(__name__)

_RENDERED_XML = "rendered.xml"
_ASSETS_DIR = "assets"
_SNAPSHOT_IGNORE = shutil.ignore_patterns(".git", ".quarto", "_freeze")


@dataclass(frozen=True, slots=True)
class RenderKey:
    project_id: str
    version: str


@dataclass(slots=True)
class RenderResult:
    xml_text: str
    assets_dir: Path
    cache_hit: bool = False


def content_version(text: str) -> str:
    """Content-derived version for callers without a commit hash."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class RenderGateway:
    """Render a source file to JATS XML, at most once per (project, version, file)."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()

    def render(
        self,
        source_path: Path,
        project_root: Path,
        key: RenderKey,
        *,
        source_text: str | None = None,
    ) -> RenderResult:
        project_root = Path(project_root).resolve()
        rel_path = _relative_source(Path(source_path), project_root)
        entry = self._cache_entry(key, rel_path)

        cached = _read_entry(entry)
        if cached is not None:
            logger.info("Render cache hit for %s@%s (%s)", key.project_id, key.version, rel_path)
            return cached

        logger.info("Render cache miss for %s@%s (%s); running quarto", key.project_id, key.version, rel_path)
        with tempfile.TemporaryDirectory(prefix="qmdtree-render-") as tmp:
            tmp_path = Path(tmp)
            snapshot = tmp_path / "project"
            shutil.copytree(project_root, snapshot, ignore=_SNAPSHOT_IGNORE)

            doc = snapshot / rel_path
            if source_text is not None:
                doc.parent.mkdir(parents=True, exist_ok=True)
                doc.write_text(source_text, encoding="utf-8")
            if not doc.is_file():
                raise RenderFailure(f"source file not found in project: {rel_path}")

            out_dir = tmp_path / "out"
            self._run_quarto(doc, snapshot, out_dir)
            xml_path = _locate_xml(out_dir, doc)
            xml_text = xml_path.read_text(encoding="utf-8")

            # XML beside the document: cache only its side files.
            output_root = xml_path.parent if out_dir in xml_path.parents else None
            self._store(entry, xml_text, output_root, doc)

        result = _read_entry(entry)
        if result is None:  # pragma: no cover - store() either commits or raises
            raise RenderFailure(f"render cache entry missing after store: {entry}")
        result.cache_hit = False
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cache_entry(self, key: RenderKey, rel_path: Path) -> Path:
        project = hashlib.sha256(key.project_id.encode("utf-8")).hexdigest()[:16]
        version = re.sub(r"[^A-Za-z0-9._-]", "_", key.version) or "_"
        doc = hashlib.sha1(rel_path.as_posix().encode("utf-8")).hexdigest()[:12]
        return Path(self.settings.cache_dir) / project / version / doc

    def _run_quarto(self, doc: Path, snapshot: Path, out_dir: Path) -> None:
        cmd = [
            self.settings.quarto_bin,
            "render",
            doc.relative_to(snapshot).as_posix(),
            "--to",
            "jats",
            "--output-dir",
            str(out_dir),
        ]
        logger.debug("Running %s in %s", " ".join(cmd), snapshot)
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(snapshot),
                capture_output=True,
                text=True,
                timeout=self.settings.render_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RenderFailure(f"quarto executable not found: {self.settings.quarto_bin}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RenderFailure(
                f"quarto render timed out after {self.settings.render_timeout:g}s",
                diagnostics=_as_text(exc.stderr),
            ) from exc

        if proc.returncode != 0:
            raise RenderFailure(
                f"quarto render failed (exit {proc.returncode})",
                diagnostics=proc.stderr or proc.stdout or "",
            )

    def _store(self, entry: Path, xml_text: str, output_root: Path | None, doc: Path) -> None:
        entry.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=entry.parent))
        try:
            assets = staging / _ASSETS_DIR
            if output_root is not None:
                shutil.copytree(output_root, assets)
            else:
                assets.mkdir()
            side_files = doc.parent / f"{doc.stem}_files"
            if side_files.is_dir() and not (assets / side_files.name).exists():
                shutil.copytree(side_files, assets / side_files.name)
            (staging / _RENDERED_XML).write_text(xml_text, encoding="utf-8")
            try:
                os.rename(staging, entry)
            except OSError:
                if not (entry / _RENDERED_XML).is_file():
                    raise
                logger.debug("Concurrent render already cached %s", entry)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)


def _relative_source(source_path: Path, project_root: Path) -> Path:
    if not source_path.is_absolute():
        return source_path
    try:
        return source_path.resolve().relative_to(project_root)
    except ValueError as exc:
        raise RenderFailure(f"{source_path} is not inside project {project_root}") from exc


def _read_entry(entry: Path) -> RenderResult | None:
    xml_path = entry / _RENDERED_XML
    if not xml_path.is_file():
        return None
    return RenderResult(
        xml_text=xml_path.read_text(encoding="utf-8"),
        assets_dir=entry / _ASSETS_DIR,
        cache_hit=True,
    )


def _locate_xml(out_dir: Path, doc: Path) -> Path:
    if out_dir.is_dir():
        named = sorted(out_dir.rglob(f"{doc.stem}.xml"))
        if named:
            return named[0]
        candidates = sorted(out_dir.rglob("*.xml"))
        if len(candidates) == 1:
            return candidates[0]
    sibling = doc.with_suffix(".xml")
    if sibling.is_file():
        return sibling
    raise RenderFailure(f"quarto produced no JATS output for {doc.name}")


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
