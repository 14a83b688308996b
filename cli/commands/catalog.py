"""Catalog inspection command: catalog-stats."""
from __future__ import annotations

import argparse

from cli.core import load_index, output_json


def cmd_catalog_stats(args: argparse.Namespace) -> None:
    """Build the catalog index and report what it holds."""
    index = load_index(args.catalog, getattr(args, "vector_backend", None))
    output_json({"ok": True, **index.snapshot().stats()})
