from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from . import commands
from .version import __version__

PROG_ENV_VAR = "MARGINALIA_PROG"

HELP = f"""marginalia {__version__} - comment threads embedded in plain text

Threads live in invisible marker pairs and convert losslessly to and from
CriticMarkup with a .critmeta.json sidecar.

USAGE:
    marginalia <COMMAND> [OPTIONS]

COMMANDS:
    export (to-critic)      Markers -> CriticMarkup + sidecar
    import (from-critic)    CriticMarkup (+ sidecar) -> markers
    threads                 List comment threads in reading order
    check                   Report malformed pairs and duplicate ids
    add                     Comment on the first occurrence of some text
    reply                   Reply to a top-level comment
    edit                    Change the text of your own comment or reply
    resolve                 Toggle a comment's resolved state
    delete                  Delete your own comment or reply

Use 'marginalia <command> --help' for more information.
"""

COMMAND_ALIASES = {
    "to-critic": "export",
    "from-critic": "import",
}


def _handle_common_errors(fn):
    try:
        return fn()
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:  # pragma: no cover - explicit user-facing fallback path.
        print(f"error: {exc}", file=sys.stderr)
        return 1


def _prog_name(subcmd: str) -> str:
    base = os.environ.get(PROG_ENV_VAR) or "marginalia"
    return f"{base} {subcmd}"


def _new_parser(subcmd: str, description: str):
    parser = argparse.ArgumentParser(prog=_prog_name(subcmd), description=description)
    parser.add_argument("input", type=Path, help="Input document path")
    parser.add_argument("-o", "--output", type=Path, help="Output document (default: rewrite input in place)")
    return parser


def _build_export_parser(subcmd: str):
    parser = _new_parser(subcmd, "Convert marker threads to CriticMarkup and write a metadata sidecar")
    parser.add_argument("--sidecar", type=Path, help="Sidecar path (default: <output>.critmeta.json)")
    return parser


def _build_import_parser(subcmd: str):
    parser = _new_parser(subcmd, "Convert CriticMarkup comments back to marker threads")
    parser.add_argument("--sidecar", type=Path, help="Sidecar path (default: <input>.critmeta.json)")
    parser.add_argument(
        "--no-sidecar",
        dest="use_sidecar",
        action="store_false",
        help="Ignore any sidecar and import without metadata",
    )
    return parser


def _build_read_only_parser(subcmd: str, description: str):
    parser = argparse.ArgumentParser(prog=_prog_name(subcmd), description=description)
    parser.add_argument("input", type=Path, help="Input document path")
    return parser


def _build_add_parser(subcmd: str):
    parser = _new_parser(subcmd, "Add a comment anchored on the first occurrence of --at text")
    parser.add_argument("--at", dest="anchor", default="", help="Text to annotate (empty: point comment at end)")
    parser.add_argument("-m", "--message", required=True, help="Comment text")
    parser.add_argument("--author", help=f"Author name (default: ${commands.AUTHOR_ENV_VAR} or git user.name)")
    return parser


def _build_reply_parser(subcmd: str):
    parser = _new_parser(subcmd, "Reply to a top-level comment")
    parser.add_argument("comment_id", help="Top-level comment id")
    parser.add_argument("-m", "--message", required=True, help="Reply text")
    parser.add_argument("--author", help=f"Author name (default: ${commands.AUTHOR_ENV_VAR} or git user.name)")
    return parser


def _build_id_parser(subcmd: str, description: str):
    parser = _new_parser(subcmd, description)
    parser.add_argument("comment_id", help="Comment id")
    return parser


def _build_edit_parser(subcmd: str):
    parser = _build_id_parser(subcmd, "Replace the text of a comment or reply you wrote")
    parser.add_argument("-m", "--message", required=True, help="New comment text")
    parser.add_argument("--author", help=f"Your author name (default: ${commands.AUTHOR_ENV_VAR} or git user.name)")
    return parser


def _build_delete_parser(subcmd: str):
    parser = _build_id_parser(subcmd, "Delete a comment (keeps annotated text) or a reply you wrote")
    parser.add_argument("--author", help=f"Your author name (default: ${commands.AUTHOR_ENV_VAR} or git user.name)")
    return parser


def main_export(argv=None, prog_name="export"):
    args = _build_export_parser(prog_name).parse_args(argv)
    return _handle_common_errors(lambda: commands.run_export(args.input, args.output, args.sidecar))


def main_import(argv=None, prog_name="import"):
    args = _build_import_parser(prog_name).parse_args(argv)
    return _handle_common_errors(
        lambda: commands.run_import(args.input, args.output, args.sidecar, use_sidecar=args.use_sidecar)
    )


def main_threads(argv=None, prog_name="threads"):
    args = _build_read_only_parser(prog_name, "List comment threads in reading order").parse_args(argv)
    return _handle_common_errors(lambda: commands.run_threads(args.input))


def main_check(argv=None, prog_name="check"):
    args = _build_read_only_parser(prog_name, "Check comment markers for problems").parse_args(argv)
    return _handle_common_errors(lambda: commands.run_check(args.input))


def main_add(argv=None, prog_name="add"):
    args = _build_add_parser(prog_name).parse_args(argv)
    return _handle_common_errors(
        lambda: commands.run_add(args.input, args.anchor, args.message, args.output, author=args.author)
    )


def main_reply(argv=None, prog_name="reply"):
    args = _build_reply_parser(prog_name).parse_args(argv)
    return _handle_common_errors(
        lambda: commands.run_reply(args.input, args.comment_id, args.message, args.output, author=args.author)
    )


def main_resolve(argv=None, prog_name="resolve"):
    args = _build_id_parser(prog_name, "Toggle a top-level comment's resolved state").parse_args(argv)
    return _handle_common_errors(lambda: commands.run_resolve(args.input, args.comment_id, args.output))


def main_edit(argv=None, prog_name="edit"):
    args = _build_edit_parser(prog_name).parse_args(argv)
    return _handle_common_errors(
        lambda: commands.run_edit(args.input, args.comment_id, args.message, args.output, author=args.author)
    )


def main_delete(argv=None, prog_name="delete"):
    args = _build_delete_parser(prog_name).parse_args(argv)
    return _handle_common_errors(
        lambda: commands.run_delete(args.input, args.comment_id, args.output, author=args.author)
    )


SUBCOMMANDS = {
    "export": main_export,
    "import": main_import,
    "threads": main_threads,
    "check": main_check,
    "add": main_add,
    "reply": main_reply,
    "edit": main_edit,
    "resolve": main_resolve,
    "delete": main_delete,
}


def main(argv=None):
    args_list = list(sys.argv[1:] if argv is None else argv)
    if not args_list or args_list[0] in {"-h", "--help"}:
        print(HELP)
        return 0

    if args_list[0] in {"-V", "--version"}:
        print(f"marginalia {__version__}")
        return 0

    subcmd = args_list[0]
    handler = SUBCOMMANDS.get(COMMAND_ALIASES.get(subcmd, subcmd))
    if handler is None:
        print(f"error: unknown command '{subcmd}'. Use 'marginalia --help'.", file=sys.stderr)
        return 2
    return handler(args_list[1:], prog_name=subcmd)
