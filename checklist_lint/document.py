"""
Markdown checklist parsing.

Reads the parts of a Markdown document the linter cares about: headings
(with GitHub-style anchor slugs), checkbox items, links and fenced code
blocks. Fenced blocks are opaque, so a ``# comment`` inside a YAML
snippet is never taken for a heading.
"""

import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

FENCE_OPEN = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
HEADING = re.compile(r"^ {0,3}(?P<hashes>#{1,6})(?:[ \t]+(?P<title>.*?))?[ \t]*$")
LIST_CHECKBOX = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\[(?P<mark>[^\]]*)\](?=\s|$)\s*(?P<text>.*)$")
INLINE_LINK = re.compile(
    r"(?P<bang>!?)\[(?P<text>[^\]]*)\]\(\s*<?(?P<target>[^)\s>]*)>?(?:\s+(?:\"[^\"]*\"|'[^']*'|\([^)]*\)))?\s*\)"
)
REFERENCE_DEF = re.compile(r"^ {0,3}\[(?P<label>[^\]]+)\]:\s*<?(?P<target>[^\s>]+)>?")
CODE_SPAN = re.compile(r"(`+)(?:.+?)\1")
HTML_ANCHOR = re.compile(r"<a\s+(?:[^>]*?\s)?(?:name|id)=[\"']([^\"']+)[\"']", re.IGNORECASE)
# Marks that look like an attempt at a checkbox but are not "[ ]", "[x]" or "[X]"
NEAR_CHECKBOX = re.compile(r"^\s*[xX*/\-✓✔]?\s*$")

VALID_MARKS = {" ": False, "x": True, "X": True}


def slugify(title: str) -> str:
    """GitHub-style heading anchor.

    >>> slugify("Cron Jobs & Scheduling")
    'cron-jobs--scheduling'
    """
    slug = title.strip().lower()
    slug = re.sub(r"[^\w\- ]", "", slug)
    return slug.replace(" ", "-")


@dataclass
class Heading:
    level: int
    title: str
    line: int
    slug: str


@dataclass
class ChecklistItem:
    text: str
    checked: bool
    line: int
    section: str = ""


@dataclass
class Link:
    text: str
    target: str
    line: int
    is_image: bool = False


@dataclass
class CodeBlock:
    """Fenced code block; ``line`` is the line of the opening fence."""

    language: str
    content: str
    line: int


@dataclass
class MalformedItem:
    raw: str
    line: int


@dataclass
class ChecklistDocument:
    path: Optional[Path] = None
    headings: List[Heading] = field(default_factory=list)
    items: List[ChecklistItem] = field(default_factory=list)
    links: List[Link] = field(default_factory=list)
    code_blocks: List[CodeBlock] = field(default_factory=list)
    malformed_items: List[MalformedItem] = field(default_factory=list)
    html_anchors: Set[str] = field(default_factory=set)

    @property
    def anchors(self) -> Set[str]:
        """Every ``#fragment`` that resolves inside this document."""
        return {heading.slug for heading in self.headings} | self.html_anchors

    @property
    def display_path(self) -> str:
        return str(self.path) if self.path is not None else "<string>"

    def progress(self) -> Dict[str, Tuple[int, int]]:
        """``(done, total)`` per section, in document order."""
        counts: "OrderedDict[str, List[int]]" = OrderedDict()
        for item in self.items:
            done_total = counts.setdefault(item.section, [0, 0])
            done_total[1] += 1
            if item.checked:
                done_total[0] += 1
        return {section: (done, total) for section, (done, total) in counts.items()}


def _closes(line: str, fence: str) -> bool:
    stripped = line.strip()
    if len(line) - len(line.lstrip(" ")) > 3:
        return False
    return (
        len(stripped) >= len(fence)
        and set(stripped) == {fence[0]}
    )


def parse_markdown(text: str, path: Optional[Path] = None) -> ChecklistDocument:
    """Parse ``text`` into a ``ChecklistDocument``."""
    doc = ChecklistDocument(path=path)
    slug_counts: Dict[str, int] = {}
    section = ""

    fence: Optional[str] = None
    block_language = ""
    block_line = 0
    block_lines: List[str] = []

    for number, line in enumerate(text.splitlines(), start=1):
        if fence is not None:
            if _closes(line, fence):
                doc.code_blocks.append(CodeBlock(block_language, _join(block_lines), block_line))
                fence = None
            else:
                block_lines.append(line)
            continue

        opening = FENCE_OPEN.match(line)
        if opening and not (opening.group("fence")[0] == "`" and "`" in opening.group("info")):
            fence = opening.group("fence")
            info = opening.group("info").strip()
            block_language = info.split()[0].lower() if info else ""
            block_line = number
            block_lines = []
            continue

        heading = HEADING.match(line)
        if heading:
            title = re.sub(r"[ \t]+#+$", "", heading.group("title") or "").strip()
            slug = slugify(title)
            seen = slug_counts.get(slug, 0)
            slug_counts[slug] = seen + 1
            if seen:
                slug = f"{slug}-{seen}"
            doc.headings.append(Heading(len(heading.group("hashes")), title, number, slug))
            section = title
            continue

        doc.html_anchors.update(HTML_ANCHOR.findall(line))

        checkbox = LIST_CHECKBOX.match(line)
        if checkbox:
            mark = checkbox.group("mark")
            if mark in VALID_MARKS:
                doc.items.append(ChecklistItem(
                    text=checkbox.group("text").strip(),
                    checked=VALID_MARKS[mark],
                    line=number,
                    section=section,
                ))
            elif NEAR_CHECKBOX.match(mark):
                doc.malformed_items.append(MalformedItem(line.strip(), number))

        reference = REFERENCE_DEF.match(line)
        if reference:
            doc.links.append(Link(reference.group("label"), reference.group("target"), number))
            continue

        for match in INLINE_LINK.finditer(CODE_SPAN.sub("", line)):
            doc.links.append(Link(
                text=match.group("text"),
                target=match.group("target"),
                line=number,
                is_image=bool(match.group("bang")),
            ))

    if fence is not None:
        # Unclosed fence runs to the end of the file
        doc.code_blocks.append(CodeBlock(block_language, _join(block_lines), block_line))

    return doc


def _join(lines: List[str]) -> str:
    return "\n".join(lines) + "\n" if lines else ""


def parse_document(path: Path) -> ChecklistDocument:
    """Read and parse a Markdown file (UTF-8).

    Raises:
        OSError: If the file cannot be read.
        UnicodeDecodeError: If it is not UTF-8.
    """
    path = Path(path)
    return parse_markdown(path.read_text(encoding="utf-8"), path=path)
