"""
Checklist validation rules.

Each validator takes a parsed ``ChecklistDocument`` and returns findings;
nothing here raises on bad content. Rules:

    broken-link          relative link to a file that does not exist
    broken-anchor        ``#fragment`` with no matching heading
    invalid-json         ``json`` block that does not parse
    invalid-yaml         ``yaml``/``yml`` block that does not parse
    manifest-engines     package.json fragment without ``engines.node``
    compose-services     compose ``services`` that is not a mapping of mappings
    compose-healthcheck  compose service without a ``healthcheck``
    malformed-checkbox   ``[]``, ``[ x]`` and similar near-misses
    empty-item           checkbox with no text
    duplicate-item       same item text twice in one section
    unreadable           file that cannot be read as UTF-8
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlsplit

import yaml

from checklist_lint.document import ChecklistDocument, parse_document

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = (".md", ".markdown")
MANIFEST_KEYS = {"name", "scripts", "dependencies", "engines"}


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Finding:
    """One problem found in a document."""
    path: str
    line: int
    rule: str
    message: str
    severity: Severity = Severity.ERROR

    def __str__(self) -> str:
        return f"{self.path}:{self.line}: {self.severity.value} [{self.rule}] {self.message}"


def _finding(doc: ChecklistDocument, line: int, rule: str, message: str,
             severity: Severity = Severity.ERROR) -> Finding:
    return Finding(doc.display_path, line, rule, message, severity)


def _has_anchor(doc: ChecklistDocument, fragment: str) -> bool:
    anchors = doc.anchors
    return fragment in anchors or unquote(fragment).lower() in anchors


def validate_links(
    doc: ChecklistDocument,
    root: Optional[Path] = None,
    cache: Optional[Dict[Path, ChecklistDocument]] = None,
) -> List[Finding]:
    """
    Check that relative links and anchors resolve.

    Args:
        doc: Parsed document
        root: Directory that ``/absolute`` links resolve against
            (defaults to the document's directory)
        cache: Parsed link targets, shared across documents

    Returns:
        Findings for broken links and anchors
    """
    findings: List[Finding] = []
    cache = cache if cache is not None else {}
    base = doc.path.parent if doc.path is not None else Path(".")
    root = Path(root) if root is not None else base

    for link in doc.links:
        if not link.target:
            findings.append(_finding(doc, link.line, "broken-link", f"Link '{link.text}' has an empty target"))
            continue

        parts = urlsplit(link.target)
        if parts.scheme or parts.netloc:
            continue

        path_part = unquote(parts.path)
        fragment = parts.fragment

        if not path_part:
            if fragment and not _has_anchor(doc, fragment):
                findings.append(_finding(doc, link.line, "broken-anchor",
                                         f"Anchor '#{fragment}' does not match any heading"))
            continue

        resolved = (root / path_part.lstrip("/")) if path_part.startswith("/") else (base / path_part)
        if not resolved.exists():
            findings.append(_finding(doc, link.line, "broken-link",
                                     f"Link target '{link.target}' does not exist"))
            continue

        if not fragment or resolved.suffix.lower() not in MARKDOWN_SUFFIXES or not resolved.is_file():
            continue

        key = resolved.resolve()
        if key not in cache:
            try:
                cache[key] = parse_document(resolved)
            except (OSError, UnicodeDecodeError) as e:
                findings.append(_finding(doc, link.line, "unreadable",
                                         f"Cannot read link target '{path_part}': {e}"))
                continue

        if not _has_anchor(cache[key], fragment):
            findings.append(_finding(doc, link.line, "broken-anchor",
                                     f"Anchor '#{fragment}' not found in '{path_part}'"))

    return findings


def _check_manifest(doc: ChecklistDocument, line: int, data: Any) -> List[Finding]:
    if not isinstance(data, dict) or not MANIFEST_KEYS & set(data):
        return []
    engines = data.get("engines")
    if isinstance(engines, dict) and engines.get("node"):
        return []
    return [_finding(doc, line, "manifest-engines",
                     "package.json fragment does not pin engines.node", Severity.WARNING)]


def _check_compose(doc: ChecklistDocument, line: int, data: Any) -> List[Finding]:
    if not isinstance(data, dict) or "services" not in data:
        return []

    services = data["services"]
    if not isinstance(services, dict) or not services:
        return [_finding(doc, line, "compose-services", "'services' must be a non-empty mapping")]

    findings: List[Finding] = []
    for name, service in services.items():
        if not isinstance(service, dict):
            findings.append(_finding(doc, line, "compose-services", f"Service '{name}' must be a mapping"))
        elif "healthcheck" not in service:
            findings.append(_finding(doc, line, "compose-healthcheck",
                                     f"Service '{name}' has no healthcheck", Severity.WARNING))
    return findings


def validate_snippets(doc: ChecklistDocument) -> List[Finding]:
    """Parse ``json`` and ``yaml`` blocks and check known fragment shapes."""
    findings: List[Finding] = []

    for block in doc.code_blocks:
        if block.language == "json":
            try:
                data = json.loads(block.content)
            except json.JSONDecodeError as e:
                findings.append(_finding(doc, block.line + e.lineno, "invalid-json",
                                         f"Invalid JSON: {e.msg} (column {e.colno})"))
                continue
            findings.extend(_check_manifest(doc, block.line, data))

        elif block.language in ("yaml", "yml"):
            try:
                documents = list(yaml.safe_load_all(block.content))
            except yaml.YAMLError as e:
                mark = getattr(e, "problem_mark", None)
                offset = mark.line + 1 if mark is not None else 1
                problem = getattr(e, "problem", None) or str(e)
                findings.append(_finding(doc, block.line + offset, "invalid-yaml", f"Invalid YAML: {problem}"))
                continue
            for data in documents:
                findings.extend(_check_compose(doc, block.line, data))

    return findings


def validate_items(doc: ChecklistDocument) -> List[Finding]:
    """Checkbox syntax, empty items and duplicates within a section."""
    findings: List[Finding] = [
        _finding(doc, item.line, "malformed-checkbox",
                 f"Malformed checkbox '{item.raw}' (use '[ ]', '[x]' or '[X]')")
        for item in doc.malformed_items
    ]

    seen: Dict[tuple, int] = {}
    for item in doc.items:
        if not item.text:
            findings.append(_finding(doc, item.line, "empty-item", "Checklist item has no text"))
            continue
        key = (item.section, " ".join(item.text.split()).casefold())
        if key in seen:
            findings.append(_finding(doc, item.line, "duplicate-item",
                                     f"Duplicate of the item on line {seen[key]}", Severity.WARNING))
        else:
            seen[key] = item.line

    return findings


def lint_document(
    doc: ChecklistDocument,
    root: Optional[Path] = None,
    cache: Optional[Dict[Path, ChecklistDocument]] = None,
) -> List[Finding]:
    """All rules, ordered by line."""
    findings = validate_links(doc, root=root, cache=cache)
    findings.extend(validate_snippets(doc))
    findings.extend(validate_items(doc))
    return sorted(findings, key=lambda f: (f.line, f.rule))


@dataclass
class LintReport:
    findings: List[Finding] = field(default_factory=list)
    documents: List[ChecklistDocument] = field(default_factory=list)

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    def has_errors(self, strict: bool = False) -> bool:
        """True when the run should fail; ``strict`` counts warnings too."""
        return bool(self.errors) or (strict and bool(self.warnings))


def _expand(paths: Iterable[Path]) -> List[Path]:
    files: List[Path] = []
    for path in paths:
        path = Path(path)
        candidates = sorted(path.rglob("*.md")) if path.is_dir() else [path]
        for candidate in candidates:
            if candidate not in files:
                files.append(candidate)
    return files


def lint_paths(paths: Iterable[Path], root: Optional[Path] = None) -> LintReport:
    """
    Lint files and directories (searched recursively for ``*.md``).

    Args:
        paths: Files or directories
        root: Directory ``/absolute`` links resolve against

    Returns:
        LintReport with every finding of every document
    """
    report = LintReport()
    cache: Dict[Path, ChecklistDocument] = {}

    for path in _expand(paths):
        try:
            doc = parse_document(path)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Cannot read {path}: {e}")
            report.findings.append(Finding(str(path), 0, "unreadable", f"Cannot read file: {e}"))
            continue

        report.documents.append(doc)
        report.findings.extend(lint_document(doc, root=root, cache=cache))

    logger.debug(
        f"Linted {len(report.documents)} documents",
        extra={"errors": len(report.errors), "warnings": len(report.warnings)}
    )
    return report
