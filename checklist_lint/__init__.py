"""Validation of Markdown production-readiness checklists."""

from checklist_lint.document import (
    ChecklistDocument,
    ChecklistItem,
    CodeBlock,
    Heading,
    Link,
    MalformedItem,
    parse_document,
    parse_markdown,
    slugify,
)
from checklist_lint.validators import (
    Finding,
    LintReport,
    Severity,
    lint_document,
    lint_paths,
    validate_items,
    validate_links,
    validate_snippets,
)

__all__ = [
    "ChecklistDocument",
    "ChecklistItem",
    "CodeBlock",
    "Finding",
    "Heading",
    "Link",
    "LintReport",
    "MalformedItem",
    "Severity",
    "lint_document",
    "lint_paths",
    "parse_document",
    "parse_markdown",
    "slugify",
    "validate_items",
    "validate_links",
    "validate_snippets",
]
