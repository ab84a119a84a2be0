"""qmdtree CLI entrypoint."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from qmdtree import __version__
from qmdtree.config import load_settings
from qmdtree.errors import QmdTreeError
from qmdtree.pipeline import build_document_view, load_document, save_document
from qmdtree.render.gateway import RenderGateway
from qmdtree.renderer.html_renderer import HTMLRenderer
from qmdtree.source.base import CommentThread
from qmdtree.source.blocks import index_blocks
from qmdtree.source.comments import extract_comments

_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", type=_FILE, default=None, help="Path to qmdtree.yaml")
@click.version_option(__version__, prog_name="qmdtree")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """Convert Quarto documents to editable trees and back."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = load_settings(config_path)


@main.command("index")
@click.argument("source", type=_FILE)
def index_cmd(source: Path) -> None:
    """Print the block map of SOURCE as JSON."""
    text = extract_comments(source.read_text(encoding="utf-8")).remaining_text
    blocks = [
        {"key": b.key, "kind": b.kind, "start": b.start, "end": b.end, "text": b.text}
        for b in index_blocks(text).values()
    ]
    click.echo(json.dumps(blocks, indent=2, ensure_ascii=False))


@main.command("comments")
@click.argument("source", type=_FILE)
def comments_cmd(source: Path) -> None:
    """Print the comment threads stored in SOURCE as JSON."""
    extracted = extract_comments(source.read_text(encoding="utf-8"))
    click.echo(json.dumps([c.to_dict() for c in extracted.comments], indent=2, ensure_ascii=False))


@main.command("view")
@click.argument("source", type=_FILE)
@click.option("--xml", "xml_path", type=_FILE, default=None, help="Use pre-rendered JATS XML instead of running quarto")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project directory to render in (default: the source's directory)",
)
@click.option("--doc-id", type=str, default=None, help="Document identity used in asset URLs and the cache key")
@click.option("--version", "doc_version", type=str, default=None, help="Content version (default: source hash)")
@click.option("--output", "-o", type=click.Path(path_type=Path), required=True, help="Output JSON path")
@click.pass_obj
def view_cmd(
    settings,
    source: Path,
    xml_path: Path | None,
    project_root: Path | None,
    doc_id: str | None,
    doc_version: str | None,
    output: Path,
) -> None:
    """Build the editable tree for SOURCE and write it as JSON."""
    doc_id = doc_id or source.stem
    try:
        if xml_path is not None:
            view = build_document_view(
                xml_path.read_bytes(),
                source.read_text(encoding="utf-8"),
                doc_id,
                doc_version,
                settings=settings,
            )
        else:
            view = load_document(
                source.resolve(),
                (project_root or source.parent).resolve(),
                doc_id,
                RenderGateway(settings),
                version=doc_version,
                settings=settings,
            )
    except QmdTreeError as exc:
        raise click.ClickException(str(exc)) from exc

    _write(output, json.dumps(view.to_dict(), indent=2, ensure_ascii=False) + "\n")
    click.echo(f"Tree written: {output}")


@main.command("save")
@click.argument("tree_path", metavar="TREE", type=_FILE)
@click.argument("source", type=_FILE)
@click.option("--comments", "comments_path", type=_FILE, default=None, help="JSON list of comment threads")
@click.option("--output", "-o", type=click.Path(path_type=Path), required=True, help="Output source path")
@click.pass_obj
def save_cmd(settings, tree_path: Path, source: Path, comments_path: Path | None, output: Path) -> None:
    """Serialize an edited TREE back to source text, using SOURCE for verbatim blocks."""
    payload, tree = _load_tree(tree_path)
    raw = source.read_text(encoding="utf-8")

    if comments_path is not None:
        threads = _read_json(comments_path)
    elif "comments" in payload:
        threads = payload["comments"]
    else:
        threads = [c.to_dict() for c in extract_comments(raw).comments]
    if not isinstance(threads, list):
        raise click.ClickException("comments must be a JSON list of threads")
    comments = [CommentThread.from_dict(t) for t in threads if isinstance(t, dict)]

    try:
        result = save_document(tree, raw, comments, settings=settings)
    except (QmdTreeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    _write(output, result.text)
    click.echo(f"Source written: {output}")
    for entry in result.reconstructed:
        click.echo(f"warning: reconstructed {entry.node_type} block {entry.block_key!r}", err=True)


@main.command("preview")
@click.argument("tree_path", metavar="TREE", type=_FILE)
@click.option("--output", "-o", type=click.Path(path_type=Path), required=True, help="Output HTML path")
@click.option("--title", type=str, default=None, help="Override document title")
@click.option(
    "--assets-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Rendered assets directory; images found there are embedded",
)
@click.pass_obj
def preview_cmd(settings, tree_path: Path, output: Path, title: str | None, assets_dir: Path | None) -> None:
    """Render TREE as a self-contained HTML review page."""
    payload, tree = _load_tree(tree_path)
    comments = payload.get("comments", [])

    renderer = HTMLRenderer(asset_prefix=settings.asset_prefix)
    html = renderer.render(tree, title_override=title, comments=comments, assets_dir=assets_dir)
    _write(output, html)
    click.echo(f"Rendered: {output}")


def _read_json(path: Path):
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path.name} is not valid JSON: {exc}") from exc


def _load_tree(path: Path) -> tuple[dict, dict]:
    """Accept either a bare tree or the {tree, comments, version} payload written by view."""
    payload = _read_json(path)
    if not isinstance(payload, dict):
        raise click.ClickException(f"{path.name} does not hold a document tree")
    tree = payload.get("tree", payload)
    if not isinstance(tree, dict) or tree.get("type") != "doc":
        raise click.ClickException(f"{path.name} does not hold a document tree")
    return payload, tree


def _write(output: Path, text: str) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")


if __name__ == "__main__":  # pragma: no cover
    main()
