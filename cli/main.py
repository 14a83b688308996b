"""CLI entry point: argparse dispatcher for all subcommands."""
from __future__ import annotations

import argparse
import json
import sys
import traceback


# ---------------------------------------------------------------------------
# Command registry: command name → (module_path, function_name)
# Lazy-imported at dispatch time to keep startup fast.
# ---------------------------------------------------------------------------
COMMANDS = {
    "compose":       ("cli.commands.compose", "cmd_compose"),
    "catalog-stats": ("cli.commands.catalog", "cmd_catalog_stats"),
}


# ---------------------------------------------------------------------------
# Shared argparse helpers
# ---------------------------------------------------------------------------
def _add_catalog_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("catalog", help="Catalog file (.json or .jsonl)")
    p.add_argument("--vector-backend", choices=["numpy", "qdrant"], help="Vector index backend")


# ---------------------------------------------------------------------------
# Parser builder
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    from cli._version import __version__

    parser = argparse.ArgumentParser(
        prog="survey-composer",
        description="Compose surveys from a question catalog",
    )
    parser.add_argument("--debug", action="store_true", help="Show stack traces on error")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    # compose
    p = sub.add_parser("compose", help="Compose a survey draft for a requirement")
    _add_catalog_args(p)
    p.add_argument("-r", "--requirement", help="Requirement JSON file (flags below override it)")
    p.add_argument("--language", help="Survey language (e.g. tr, en)")
    p.add_argument("-n", "--count", type=int, help="Number of questions")
    p.add_argument("--industry", help="Industry keyword")
    p.add_argument("-m", "--metric", nargs="+", help="Target metrics")
    p.add_argument("-k", "--keyword", nargs="+", help="Keyword expansions")
    p.add_argument("--category", nargs="+", help="Category constraints (a/b/c)")
    p.add_argument("--embed", action="store_true", help="Embed the requirement with fastembed")
    p.add_argument("--rerank", action="store_true", help="Run the OpenAI reranker (best effort; also SURVEY_RERANK_ENABLED)")
    p.add_argument("--with-text", action="store_true", help="Include question text in the output")

    # catalog-stats
    p = sub.add_parser("catalog-stats", help="Load a catalog and print index statistics")
    _add_catalog_args(p)

    return parser


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    debug = "--debug" in argv
    argv = [arg for arg in argv if arg != "--debug"]
    args = parser.parse_args(argv)
    args.debug = debug

    entry = COMMANDS.get(args.command)
    if not entry:
        parser.print_help()
        sys.exit(1)

    mod_path, fn_name = entry
    try:
        import importlib
        mod = importlib.import_module(mod_path)
        fn = getattr(mod, fn_name)
        fn(args)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as exc:
        json.dump({"ok": False, "error": str(exc), "type": type(exc).__name__}, sys.stdout, default=str)
        sys.stdout.write("\n")
        if args.debug:
            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
