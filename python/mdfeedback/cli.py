import argparse
import json
import logging
import sys
from io import BytesIO
from pathlib import Path
from typing import Optional

import structlog

from mdfeedback import __version__
from mdfeedback.diff import diff_texts
from mdfeedback.ingest import extract_markup_from_stream
from mdfeedback.models import EngineConfig
from mdfeedback.session import ReviewSession


def configure_logging(level: str = "WARNING"):
    """All logs go to stderr so command output on stdout stays clean."""
    logging.basicConfig(stream=sys.stderr, level=getattr(logging, level.upper(), logging.WARNING), force=True)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.WARNING)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _read_docx_markup(path: Path) -> str:
    with open(path, "rb") as f:
        result = extract_markup_from_stream(BytesIO(f.read()))
    print(f"Imported {result.change_count} changes and {result.comment_count} comments.", file=sys.stderr)
    return result.markup


def _read_markup(path: Path) -> str:
    if not path.exists():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)
    if path.suffix.lower() == ".docx":
        return _read_docx_markup(path)
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _write_output(text: str, output: Optional[Path]):
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"✅ Saved to {output}", file=sys.stderr)
    else:
        print(text)


def _load_session(path: Path) -> ReviewSession:
    return ReviewSession(_read_markup(path), EngineConfig.from_env())


def handle_import(args):
    markup = _read_markup(args.input)
    _write_output(markup, args.output or args.input.with_suffix(".md"))


def handle_changes(args):
    session = _load_session(args.input)
    records = session.changes

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    summary = session.summary()
    print(
        f"Found {summary['total']} changes ({summary['commented']} commented, {summary['uncommented']} uncommented):",
        file=sys.stderr,
    )
    for r in records:
        if r.type == "deletion":
            line = f"[-] {r.deleted_text}"
        elif r.type == "insertion":
            line = f"[+] {r.inserted_text}"
        elif r.type == "substitution":
            line = f"[~] '{r.deleted_text}' -> '{r.inserted_text}'"
        else:
            line = f"[=] {r.highlighted_text}"
        print(line)
        for thread in r.comments:
            print(f"    > {thread.text}")


def handle_accept(args):
    _write_output(_load_session(args.input).accept_all(), args.output)


def handle_reject(args):
    _write_output(_load_session(args.input).reject_all(), args.output)


def handle_export(args):
    _write_output(_load_session(args.input).export(), args.output)


def handle_diff(args):
    original = ReviewSession(_read_markup(args.original)).accept_all()
    modified = ReviewSession(_read_markup(args.modified)).accept_all()
    markup = diff_texts(original, modified)
    _write_output(markup, args.output)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="mdfeedback", description="Markdown Feedback: track changes and comments in CriticMarkup"
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default="WARNING", help="Log level for stderr output (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Subcommands")

    p_import = subparsers.add_parser("import", help="Convert a DOCX with tracked changes to CriticMarkup")
    p_import.add_argument("input", type=Path, help="Input DOCX file")
    p_import.add_argument("-o", "--output", type=Path, help="Output Markdown path (default: input.md)")
    p_import.set_defaults(func=handle_import)

    p_changes = subparsers.add_parser("changes", help="List the tracked changes of a document")
    p_changes.add_argument("input", type=Path, help="CriticMarkup or DOCX file")
    p_changes.add_argument("--json", action="store_true", help="Output change records as JSON")
    p_changes.set_defaults(func=handle_changes)

    for name, handler, description in (
        ("accept", handle_accept, "Accept all changes and output clean text"),
        ("reject", handle_reject, "Reject all changes and output the original text"),
        ("export", handle_export, "Output CriticMarkup with regenerated front matter"),
    ):
        p_cmd = subparsers.add_parser(name, help=description)
        p_cmd.add_argument("input", type=Path, help="CriticMarkup or DOCX file")
        p_cmd.add_argument("-o", "--output", type=Path, help="Output file (default: stdout)")
        p_cmd.set_defaults(func=handler)

    p_diff = subparsers.add_parser("diff", help="Compare two texts and output the edits as CriticMarkup")
    p_diff.add_argument("original", type=Path, help="Original text, Markdown or DOCX")
    p_diff.add_argument("modified", type=Path, help="Modified text, Markdown or DOCX")
    p_diff.add_argument("-o", "--output", type=Path, help="Output file (default: stdout)")
    p_diff.set_defaults(func=handle_diff)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        args.func(args)
    except ValueError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
