"""
Pre-commit hook and console script for checklist documents.

Usage:
    checklist-lint [--strict] [--summary] [--quiet] PATH [PATH ...]

Exit status is 0 when no errors were found (no warnings either with
``--strict``), 1 otherwise.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from checklist_lint.validators import LintReport, lint_paths


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="checklist-lint",
        description="Validate links, snippets and checkboxes in Markdown checklists.",
    )
    parser.add_argument("paths", nargs="*", help="Markdown files or directories")
    parser.add_argument("--strict", action="store_true", help="Fail on warnings too")
    parser.add_argument("--summary", action="store_true", help="Print per-section progress")
    parser.add_argument("--quiet", action="store_true", help="Only print findings")
    return parser


def _selected(paths: List[str]) -> List[Path]:
    # pre-commit passes every staged file; only Markdown is ours
    selected = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir() or path.suffix.lower() == ".md":
            selected.append(path)
    return selected


def print_summary(report: LintReport) -> None:
    for doc in report.documents:
        progress = doc.progress()
        if not progress:
            continue
        print(f"\n{doc.display_path}")
        for section, (done, total) in progress.items():
            print(f"  {section or '(no heading)'}: {done}/{total}")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Lint the given paths.

    Returns 0 if the checklist is clean, 1 otherwise.
    """
    args = build_parser().parse_args(argv)
    paths = _selected(args.paths)
    if not paths:
        return 0

    report = lint_paths(paths)

    for finding in report.findings:
        print(finding)

    if args.summary:
        print_summary(report)

    failed = report.has_errors(strict=args.strict)
    if not args.quiet:
        verdict = "FAILED" if failed else "OK"
        print(
            f"\nchecklist-lint: {verdict} ({len(report.documents)} documents, "
            f"{len(report.errors)} errors, {len(report.warnings)} warnings)"
        )
    return 1 if failed else 0


def cli() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
