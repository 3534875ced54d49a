#!/usr/bin/env python3
"""
Pre-commit hook to validate checklist documents under docs/.
Broken relative links, unparsable JSON/YAML snippets and malformed
checkboxes fail the commit.
"""

import sys

from checklist_lint.hook import main as lint_main


def main(filenames: list[str]) -> int:
    """
    Lint staged Markdown files.
    Returns 0 if all files are clean, 1 otherwise.
    """
    status = lint_main(["--quiet", *filenames])
    if status:
        print("\n💡 Fix the findings above, then retry your commit.")
        print("   Run `checklist-lint --summary docs/checklist` for the full report.")
    return status


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
