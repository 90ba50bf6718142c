# main.py
"""CLI entry point for the book generation system."""

from __future__ import annotations

import argparse
import sys

from utils.logging import setup_logging

from orchestration.cli_runner import run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate a book chapter by chapter")
    parser.add_argument("--db", default=None, help="Path to the session database")
    sub = parser.add_subparsers(dest="command", required=True)

    for name in ("plan", "generate"):
        p = sub.add_parser(name)
        p.add_argument("blueprint", help="Path to a book blueprint JSON file")
        p.add_argument("--start", type=int, default=None)
        p.add_argument("--end", type=int, default=None)
        p.add_argument("--require-approval", action="store_true")
        p.add_argument("--model", default=None)
        p.add_argument("--temperature", type=float, default=None)

    sub.add_parser("list")

    for name in ("resume", "status", "stats"):
        p = sub.add_parser(name)
        p.add_argument("blueprint")
        p.add_argument("session")

    for name in ("approve", "regenerate", "revise"):
        p = sub.add_parser(name)
        p.add_argument("blueprint")
        p.add_argument("session")
        p.add_argument("chapter", type=int)
        if name == "revise":
            p.add_argument("instructions", nargs="+")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse command-line arguments and run the requested command."""
    args = build_parser().parse_args(argv)
    setup_logging()
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
