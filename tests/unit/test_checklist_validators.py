"""
Unit tests for checklist validation rules.

Each test builds a small document tree under tmp_path and checks the
rule ids and line numbers of the findings.
"""

from textwrap import dedent

import pytest

from checklist_lint.document import parse_document, parse_markdown
from checklist_lint.validators import (
    Finding,
    Severity,
    lint_document,
    lint_paths,
    validate_items,
    validate_links,
    validate_snippets,
)


def _rules(findings):
    return [(f.rule, f.line) for f in findings]


@pytest.fixture
def docs(tmp_path):
    """A README that links into core/lts.md"""
    (tmp_path / "core").mkdir()
    (tmp_path / "core" / "lts.md").write_text(dedent("""\
        # Node.js LTS
        ## Support windows
        - [ ] Track end-of-life dates
    """), encoding="utf-8")
    return tmp_path


def _write(root, text, name="README.md"):
    path = root / name
    path.write_text(dedent(text), encoding="utf-8")
    return parse_document(path)


class TestValidateLinks:
    """Test relative link and anchor resolution"""

    def test_valid_links(self, docs):
        """Test that existing files, anchors and external URLs pass"""
        doc = _write(docs, """\
            # Checklist
            ## Runtime
            - [ ] Follow the [LTS policy](core/lts.md)
            - [ ] Check [windows](core/lts.md#support-windows)
            - [ ] Read [below](#runtime) and [Node](https://nodejs.org/)
            - [ ] Mail [ops](mailto:ops@example.com)
        """)

        assert validate_links(doc) == []

    def test_missing_file(self, docs):
        """Test that a link to a missing file is an error"""
        doc = _write(docs, """\
            # Checklist
            See [LTS](core/missing.md).
        """)

        findings = validate_links(doc)

        assert _rules(findings) == [("broken-link", 2)]
        assert findings[0].severity == Severity.ERROR
        assert "core/missing.md" in findings[0].message

    def test_missing_anchor_in_target(self, docs):
        """Test that anchors are checked inside the linked document"""
        doc = _write(docs, "See [LTS](core/lts.md#release-schedule).\n")

        assert _rules(validate_links(doc)) == [("broken-anchor", 1)]

    def test_missing_local_anchor(self, docs):
        """Test same-document anchors"""
        doc = _write(docs, "# Title\n[up](#title) [gone](#nowhere)\n")

        findings = validate_links(doc)

        assert _rules(findings) == [("broken-anchor", 2)]
        assert "#nowhere" in findings[0].message

    def test_anchor_case_insensitive(self, docs):
        """Test that fragment case does not matter"""
        doc = _write(docs, "See [LTS](core/lts.md#Support-Windows).\n")

        assert validate_links(doc) == []

    def test_empty_target(self, docs):
        """Test that an empty link target is an error"""
        doc = _write(docs, "See [nothing]().\n")

        assert _rules(validate_links(doc)) == [("broken-link", 1)]

    def test_root_relative_links(self, docs):
        """Test that /absolute links resolve against the root"""
        (docs / "nested").mkdir()
        doc = _write(docs / "nested", "See [LTS](/core/lts.md).\n", name="page.md")

        assert validate_links(doc, root=docs) == []
        assert _rules(validate_links(doc)) == [("broken-link", 1)]

    def test_directory_link(self, docs):
        """Test that linking to a directory is allowed"""
        doc = _write(docs, "See [core](core/).\n")

        assert validate_links(doc) == []

    def test_url_encoded_path(self, docs):
        """Test that percent-encoded paths are decoded"""
        (docs / "release notes.md").write_text("# Notes\n", encoding="utf-8")
        doc = _write(docs, "See [notes](release%20notes.md#notes).\n")

        assert validate_links(doc) == []

    def test_target_parsed_once(self, docs):
        """Test that the shared cache holds parsed targets"""
        doc = _write(docs, "[a](core/lts.md#node-js-lts) [b](core/lts.md#support-windows)\n")
        cache = {}

        findings = validate_links(doc, cache=cache)

        assert len(cache) == 1
        assert _rules(findings) == [("broken-anchor", 1)]


class TestValidateSnippets:
    """Test JSON and YAML code blocks"""

    def test_valid_snippets(self):
        """Test well-formed manifest and compose snippets"""
        doc = parse_markdown(dedent("""\
            ```json
            {"name": "api", "engines": {"node": ">=20"}}
            ```
            ```yaml
            services:
              api:
                image: api:1.0
                healthcheck:
                  test: ["CMD", "curl", "-f", "http://localhost:3000/health"]
            ```
            ```js
            not: [valid json
            ```
        """))

        assert validate_snippets(doc) == []

    def test_invalid_json_line(self):
        """Test that JSON errors point at the offending line"""
        doc = parse_markdown(dedent("""\
            # Manifest
            ```json
            {
              "name": "api",
              "engines": {"node": ">=20"},
            }
            ```
        """))

        findings = validate_snippets(doc)

        assert _rules(findings) == [("invalid-json", 6)]
        assert findings[0].message.startswith("Invalid JSON:")

    def test_invalid_yaml_line(self):
        """Test that YAML errors point at the offending line"""
        doc = parse_markdown(dedent("""\
            ```yaml
            jobs:
              report:
                schedule: "0 2 * * *
            ```
        """))

        findings = validate_snippets(doc)

        assert [f.rule for f in findings] == ["invalid-yaml"]
        assert findings[0].line >= 2

    def test_yml_alias_and_multi_document(self):
        """Test that yml blocks with several documents are checked"""
        doc = parse_markdown(dedent("""\
            ```yml
            a: 1
            ---
            services:
              web:
                image: nginx
            ```
        """))

        findings = validate_snippets(doc)

        assert _rules(findings) == [("compose-healthcheck", 1)]
        assert findings[0].severity == Severity.WARNING

    def test_manifest_without_engines(self):
        """Test that package.json fragments must pin engines.node"""
        doc = parse_markdown(dedent("""\
            ```json
            {"name": "api", "scripts": {"start": "node server.js"}}
            ```
            ```json
            {"compilerOptions": {"strict": true}}
            ```
        """))

        findings = validate_snippets(doc)

        assert _rules(findings) == [("manifest-engines", 1)]
        assert findings[0].severity == Severity.WARNING

    def test_compose_services_shape(self):
        """Test that services must be a mapping of mappings"""
        doc = parse_markdown(dedent("""\
            ```yaml
            services: []
            ```
            ```yaml
            services:
              api: "api:1.0"
            ```
        """))

        assert _rules(validate_snippets(doc)) == [("compose-services", 1), ("compose-services", 4)]


class TestValidateItems:
    """Test checkbox rules"""

    def test_item_rules(self):
        """Test malformed, empty and duplicate items"""
        doc = parse_markdown(dedent("""\
            ## Runtime
            - [ ] Pin Node.js
            - [x] pin  node.js
            - []  Broken
            - [ ]
            ## Containers
            - [ ] Pin Node.js
        """))

        findings = validate_items(doc)

        assert sorted(_rules(findings), key=lambda r: r[1]) == [
            ("duplicate-item", 3),
            ("malformed-checkbox", 4),
            ("empty-item", 5),
        ]
        severities = {f.rule: f.severity for f in findings}
        assert severities["duplicate-item"] == Severity.WARNING
        assert severities["malformed-checkbox"] == Severity.ERROR


class TestLintPaths:
    """Test whole-tree linting"""

    def test_lint_document_sorted_by_line(self, docs):
        """Test that findings of all rules are ordered by line"""
        doc = _write(docs, dedent("""\
            - []  Broken
            ```json
            {
            ```
            [x](missing.md)
        """))

        assert [f.rule for f in lint_document(doc)] == ["malformed-checkbox", "invalid-json", "broken-link"]

    def test_directory_recursion(self, docs):
        """Test that directories are searched for Markdown files"""
        _write(docs, "# Checklist\n[LTS](core/lts.md#support-windows)\n")

        report = lint_paths([docs])

        assert len(report.documents) == 2
        assert report.findings == []
        assert not report.has_errors(strict=True)

    def test_files_not_linted_twice(self, docs):
        """Test that a file named directly and via its directory is linted once"""
        readme = docs / "README.md"
        readme.write_text("# Checklist\n", encoding="utf-8")

        report = lint_paths([readme, docs, readme])

        assert len(report.documents) == 2

    def test_strict_counts_warnings(self, docs):
        """Test has_errors with and without strict"""
        _write(docs, "## A\n- [ ] same\n- [ ] same\n")

        report = lint_paths([docs / "README.md"])

        assert len(report.warnings) == 1
        assert not report.has_errors()
        assert report.has_errors(strict=True)

    def test_unreadable_file(self, docs):
        """Test that missing and non-UTF-8 files are reported"""
        (docs / "latin1.md").write_bytes("# Caf\xe9\n".encode("latin-1"))

        report = lint_paths([docs / "latin1.md", docs / "absent.md"])

        assert [f.rule for f in report.findings] == ["unreadable", "unreadable"]
        assert report.has_errors()

    def test_finding_format(self):
        """Test the compiler-style rendering"""
        finding = Finding("docs/README.md", 12, "broken-link", "Link target 'x.md' does not exist")

        assert str(finding) == "docs/README.md:12: error [broken-link] Link target 'x.md' does not exist"
