"""Tests for broken-link diagnostics and the manager keeping them current."""

from __future__ import annotations

import asyncio

import pytest

from conftest import WORKSPACE_ROOT, Providers, make_doc, make_providers, workspace_path
from textile_ls.config import DiagnosticConfiguration, DiagnosticOptions
from textile_ls.diagnostics import (
    DiagnosticComputer,
    DiagnosticManager,
    InMemoryDiagnosticReporter,
    LinkWatcher,
    matches_glob,
)
from textile_ls.models import (
    ExternalHref,
    InlineLink,
    InternalHref,
    LinkDefinition,
    LinkRef,
    LinkSource,
    ReferenceHref,
    text_range,
)
from textile_ls.workspace import InMemoryWorkspace

DOC1 = make_doc(
    "doc1.textile",
    '"bad":/no/such/file.textile',  # 0
    "",
    "h1. Header",  # 2
    "",
    '"bad":#no-such-header',  # 4
    "",
    '"bad":/doc2.textile#no-such-other-header',  # 6
)

DOC2 = make_doc("doc2.textile", "h1. Other Header")

GOOD = make_doc(
    "good.textile",
    "h1. Top",
    "",
    '"same doc":#top',
    '"other doc":/doc2.textile#other-header',
    '"relative":doc2.textile',
    '"no extension":doc2#other-header',
    '"directory":/sub',
    '"site":https://example.com/missing',
)

NESTED = make_doc("sub/nested.textile", "h1. Nested")


def _summary(diagnostics):
    return [(d.code, d.range, d.severity) for d in diagnostics]


async def _diagnose(document, *others, **options):
    providers = make_providers(document, *others)
    computer = DiagnosticComputer(providers.workspace, providers.references, providers.toc)
    result = await computer.get_diagnostics(document, DiagnosticOptions(**options))
    providers.close()
    return result.diagnostics


# =============================================================================
# Glob matching
# =============================================================================


class TestMatchesGlob:
    @pytest.mark.parametrize(
        "text,pattern,expected",
        [
            ("/no/such/file", "/no/such/file", True),
            ("/images/logo.png", "/images/*.png", True),
            ("/images/logo.png", "/images/*.jpg", False),
            ("/doc.textile", "/doc.textil?", True),
            ("/drafts/a/b.textile", "/drafts/**", True),
            ("/other/a.textile", "/drafts/**", False),
            ("a/b/c.pdf", "**/*.pdf", True),
            ("c.pdf", "**/*.pdf", True),
            ("a/b/c.pdf", "a/**/c.pdf", True),
            ("a/c.pdf", "a/**/c.pdf", True),
            ("a/b/c.pdf", "a/*.pdf", True),  # Without '**', '*' also crosses '/'
            ("a/b/c.pdf", "**/d.pdf", False),
            ("/Docs/A.textile", "/docs/**", False),
        ],
    )
    def test_patterns(self, text, pattern, expected):
        assert matches_glob(text, pattern) is expected


# =============================================================================
# Computer
# =============================================================================


class TestDiagnosticComputer:
    """Validation of a single document."""

    @pytest.mark.asyncio
    async def test_broken_links(self):
        diagnostics = await _diagnose(DOC1, DOC2)

        assert _summary(diagnostics) == [
            ("link.no-such-file", text_range(0, 6, 0, 27), "warning"),
            ("link.no-such-header", text_range(4, 6, 4, 21), "warning"),
            ("link.no-such-header", text_range(6, 19, 6, 40), "warning"),
        ]
        assert [d.message for d in diagnostics] == [
            "File does not exist at path: /workspace/no/such/file.textile",
            "No header found: 'no-such-header'",
            "Header does not exist in file: no-such-other-header",
        ]
        assert [d.link for d in diagnostics] == [
            "/no/such/file.textile",
            "#no-such-header",
            "/doc2.textile#no-such-other-header",
        ]

    @pytest.mark.asyncio
    async def test_valid_links(self):
        """Existing files, headers and directories; external links are never checked."""
        assert await _diagnose(GOOD, DOC2, NESTED) == []

    @pytest.mark.asyncio
    async def test_undefined_bare_word_is_a_file_link(self):
        doc = make_doc("doc.textile", "", '"bad link":no-such')
        diagnostics = await _diagnose(doc)

        assert _summary(diagnostics) == [("link.no-such-file", text_range(1, 11, 1, 18), "warning")]
        assert diagnostics[0].message == "File does not exist at path: /workspace/no-such"

    @pytest.mark.asyncio
    async def test_one_diagnostic_per_link_to_missing_file(self):
        doc = make_doc("doc.textile", '"a":/gone.textile "b":/gone.textile#x')
        diagnostics = await _diagnose(doc)
        assert [d.code for d in diagnostics] == ["link.no-such-file", "link.no-such-file"]

    @pytest.mark.asyncio
    async def test_file_link_lookups_respect_concurrency_limit(self):
        targets = [make_doc(f"t{i}.textile", f"h1. Target {i}") for i in range(8)]
        doc = make_doc("doc.textile", *(f'"t{i}":/t{i}.textile' for i in range(8)), '"gone":/gone.textile')
        workspace = _CountingWorkspace(doc, *targets)
        providers = Providers(workspace)
        computer = DiagnosticComputer(workspace, providers.references, providers.toc, file_link_concurrency=2)

        result = await computer.get_diagnostics(doc, DiagnosticOptions())
        providers.close()

        assert [d.code for d in result.diagnostics] == ["link.no-such-file"]
        assert workspace.calls == 9
        assert workspace.peak == 2


class _CountingWorkspace(InMemoryWorkspace):
    """Tracks how many document lookups are in flight at once."""

    def __init__(self, *documents):
        super().__init__(documents, root=WORKSPACE_ROOT)
        self.calls = 0
        self.active = 0
        self.peak = 0

    async def get_or_load_document(self, path):
        self.calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().get_or_load_document(path)
        finally:
            self.active -= 1



class TestIgnoreLinks:
    """Glob patterns silence matching links."""

    @pytest.mark.asyncio
    async def test_exact_path(self):
        doc = make_doc("doc.textile", '"text":/no/such/file')
        assert len(await _diagnose(doc)) == 1
        assert await _diagnose(doc, ignore_links=["/no/such/file"]) == []

    @pytest.mark.asyncio
    async def test_double_star(self):
        diagnostics = await _diagnose(DOC1, DOC2, ignore_links=["/no/**"])
        assert [d.range.start.line for d in diagnostics] == [4, 6]

    @pytest.mark.asyncio
    async def test_path_pattern_silences_fragments(self):
        diagnostics = await _diagnose(DOC1, DOC2, ignore_links=["/doc2.textile"])
        assert [d.range.start.line for d in diagnostics] == [0, 4]

    @pytest.mark.asyncio
    async def test_href_pattern(self):
        diagnostics = await _diagnose(DOC1, DOC2, ignore_links=["/doc2.textile#*", "#no-such-*"])
        assert [d.range.start.line for d in diagnostics] == [0]


class TestLevels:
    @pytest.mark.asyncio
    async def test_error_level(self):
        diagnostics = await _diagnose(DOC1, DOC2, validate_file_links="error")
        assert [d.severity for d in diagnostics] == ["error", "warning", "warning"]

    @pytest.mark.asyncio
    async def test_ignore_fragments(self):
        diagnostics = await _diagnose(DOC1, DOC2, validate_fragment_links="ignore")
        assert [d.code for d in diagnostics] == ["link.no-such-file"]

    @pytest.mark.asyncio
    async def test_file_fragment_override(self):
        """Fragments in other files can be checked differently from same-document ones."""
        diagnostics = await _diagnose(
            DOC1,
            DOC2,
            validate_fragment_links="warning",
            validate_textile_file_link_fragments="error",
        )
        assert [d.severity for d in diagnostics] == ["warning", "warning", "error"]

    @pytest.mark.asyncio
    async def test_ignore_files(self):
        diagnostics = await _diagnose(DOC1, DOC2, validate_file_links="ignore")
        assert [d.range.start.line for d in diagnostics] == [4, 6]


class _FixedLinks:
    """Stands in for the references provider with hand-built links."""

    def __init__(self, links):
        self._links = links

    async def get_links(self, document):
        return self._links


def _source(href_text, href_range):
    return LinkSource(
        resource=workspace_path("doc.textile"),
        range=href_range,
        href_text=href_text,
        path_text=href_text,
        href_range=href_range,
    )


class TestReferenceLinks:
    @pytest.mark.asyncio
    async def test_missing_definition(self):
        doc = make_doc("doc.textile", '"text":missing')
        providers = make_providers(doc)
        link = InlineLink(source=_source("missing", text_range(0, 7, 0, 14)), href=ReferenceHref(ref="missing"))
        computer = DiagnosticComputer(providers.workspace, _FixedLinks([link]), providers.toc)

        result = await computer.get_diagnostics(doc, DiagnosticOptions())

        assert _summary(result.diagnostics) == [
            ("link.no-such-reference", text_range(0, 7, 0, 14), "warning")
        ]
        assert result.diagnostics[0].message == "No link definition found: 'missing'"

    @pytest.mark.asyncio
    async def test_defined_reference(self):
        doc = make_doc("doc.textile", '"text":name', "", "[name]https://example.com")
        providers = make_providers(doc)
        link = InlineLink(source=_source("name", text_range(0, 7, 0, 11)), href=ReferenceHref(ref="name"))
        definition = LinkDefinition(
            source=_source("https://example.com", text_range(2, 6, 2, 25)),
            ref=LinkRef(text="name", range=text_range(2, 1, 2, 5)),
            href=ExternalHref(uri="https://example.com"),
        )
        computer = DiagnosticComputer(providers.workspace, _FixedLinks([link, definition]), providers.toc)

        result = await computer.get_diagnostics(doc, DiagnosticOptions())

        assert result.diagnostics == []

    @pytest.mark.asyncio
    async def test_parsed_reference_links_are_valid(self):
        doc = make_doc("doc.textile", 'See "the docs":docs for more.', "", "[docs]https://example.com/docs")
        assert await _diagnose(doc) == []

    @pytest.mark.asyncio
    async def test_missing_fragment_without_fragment_range_marks_whole_href(self):
        doc = make_doc("doc.textile", '"text":doc2.textile#nope')
        providers = make_providers(doc, DOC2)
        link = InlineLink(
            source=_source("doc2.textile#nope", text_range(0, 7, 0, 24)),
            href=InternalHref(path=workspace_path("doc2.textile"), fragment="nope"),
        )
        computer = DiagnosticComputer(providers.workspace, _FixedLinks([link]), providers.toc)

        result = await computer.get_diagnostics(doc, DiagnosticOptions())
        providers.close()

        assert _summary(result.diagnostics) == [("link.no-such-header", text_range(0, 7, 0, 24), "warning")]


# =============================================================================
# Link watcher
# =============================================================================


class TestLinkWatcher:
    """One watch per link target, shared between documents."""

    @pytest.mark.asyncio
    async def test_reference_counting(self):
        x = make_doc("x.textile", '"a":a.textile "b":b')
        y = make_doc("y.textile", '"a":/a.textile "site":https://example.com')
        providers = make_providers(x, y)
        watcher = LinkWatcher(providers.workspace)

        watcher.update_links_for_document(x.uri, await providers.references.get_links(x))
        watcher.update_links_for_document(y.uri, await providers.references.get_links(y))

        assert watcher.watched_targets == {
            workspace_path("a.textile"): {x.uri, y.uri},
            workspace_path("b"): {x.uri},
        }
        assert providers.workspace.watched_paths == {
            workspace_path("a.textile"),
            workspace_path("b"),
            workspace_path("b.textile"),
        }

        watcher.delete_document(x.uri)

        assert watcher.watched_targets == {workspace_path("a.textile"): {y.uri}}
        assert providers.workspace.watched_paths == {workspace_path("a.textile")}

        watcher.close()
        assert providers.workspace.watched_paths == set()

    @pytest.mark.asyncio
    async def test_fires_with_linking_documents(self):
        x = make_doc("x.textile", '"b":b')
        providers = make_providers(x)
        watcher = LinkWatcher(providers.workspace)
        fired = []
        watcher.on_did_change_linked_to_file.subscribe(fired.append)
        watcher.update_links_for_document(x.uri, await providers.references.get_links(x))

        providers.workspace.create_document(make_doc("b.textile", "h1. B"))

        assert fired == [[x.uri]]


# =============================================================================
# Manager
# =============================================================================


class ManagerFixture:
    """A manager over an in-memory workspace, with a short debounce."""

    def __init__(self, *documents, open_paths=None, options=None):
        self.providers = make_providers(*documents)
        self.workspace = self.providers.workspace
        self.configuration = DiagnosticConfiguration(options)
        self.reporter = InMemoryDiagnosticReporter(self.workspace, open_paths)
        self.manager = DiagnosticManager(
            self.workspace,
            DiagnosticComputer(self.workspace, self.providers.references, self.providers.toc),
            self.configuration,
            self.reporter,
            self.providers.references,
            self.providers.toc,
            delay=0.01,
        )

    def codes(self, name):
        return [d.code for d in self.reporter.get(workspace_path(name))]

    async def idle(self):
        await self.manager.wait_for_idle()

    def close(self):
        self.manager.close()
        self.providers.close()


async def _started(*documents, **kwargs) -> ManagerFixture:
    """Build a manager and wait for its first validation pass."""
    fixture = ManagerFixture(*documents, **kwargs)
    await fixture.manager.ready
    return fixture


class TestDiagnosticManager:
    """Diagnostics of open documents follow edits, deletes and configuration."""

    @pytest.mark.asyncio
    async def test_ready_reports_open_documents(self):
        fixture = await _started(DOC1, DOC2)

        assert fixture.codes("doc1.textile") == [
            "link.no-such-file",
            "link.no-such-header",
            "link.no-such-header",
        ]
        assert fixture.reporter.get(DOC2.uri) == []
        assert fixture.manager.link_watcher.watched_targets == {
            workspace_path("no/such/file.textile"): {DOC1.uri},
            workspace_path("doc1.textile"): {DOC1.uri},
            workspace_path("doc2.textile"): {DOC1.uri},
        }
        fixture.close()

    @pytest.mark.asyncio
    async def test_edits_are_debounced(self):
        fixture = await _started(DOC1, DOC2)

        fixture.workspace.update_document(make_doc("doc2.textile", "h1. Other Header", "", "one"))
        fixture.workspace.update_document(make_doc("doc2.textile", "h1. Other Header", "", "two"))
        await fixture.idle()

        assert fixture.reporter.set_counts[DOC2.uri] == 2
        assert fixture.reporter.set_counts[DOC1.uri] == 1
        fixture.close()

    @pytest.mark.asyncio
    async def test_fixing_a_link(self):
        fixture = await _started(DOC1, DOC2)

        fixture.workspace.update_document(
            make_doc("doc1.textile", '"good":/doc2.textile#other-header', "", "h1. Header")
        )
        await fixture.idle()

        assert fixture.codes("doc1.textile") == []
        fixture.close()

    @pytest.mark.asyncio
    async def test_deleting_linked_document(self):
        """Links into a deleted document become missing-file diagnostics."""
        fixture = await _started(DOC1, DOC2)

        fixture.workspace.delete_document(DOC2.uri)
        await fixture.idle()

        assert fixture.codes("doc1.textile") == [
            "link.no-such-file",
            "link.no-such-header",
            "link.no-such-file",
        ]
        assert DOC2.uri not in fixture.reporter.diagnostics
        fixture.close()

    @pytest.mark.asyncio
    async def test_recreating_linked_document(self):
        fixture = await _started(DOC1, DOC2)
        fixture.workspace.delete_document(DOC2.uri)
        await fixture.idle()

        fixture.workspace.create_document(make_doc("doc2.textile", "h1. No Such Other Header"))
        await fixture.idle()

        assert fixture.codes("doc1.textile") == ["link.no-such-file", "link.no-such-header"]
        fixture.close()

    @pytest.mark.asyncio
    async def test_header_change_revalidates_linking_document(self):
        fixture = await _started(DOC1, DOC2)

        fixture.workspace.update_document(make_doc("doc2.textile", "h1. No Such Other Header"))
        await fixture.idle()

        assert fixture.codes("doc1.textile") == ["link.no-such-file", "link.no-such-header"]
        fixture.close()

    @pytest.mark.asyncio
    async def test_configuration_change_rebuilds(self):
        fixture = await _started(DOC1, DOC2)

        fixture.configuration.update(DiagnosticOptions(enabled=False))
        await fixture.idle()

        assert fixture.codes("doc1.textile") == []
        assert fixture.manager.link_watcher.watched_targets == {}

        fixture.configuration.update(DiagnosticOptions(validate_fragment_links="ignore"))
        await fixture.idle()

        assert fixture.codes("doc1.textile") == ["link.no-such-file"]
        fixture.close()

    @pytest.mark.asyncio
    async def test_only_open_documents_reported(self):
        fixture = await _started(DOC1, DOC2, open_paths=[DOC2.uri])
        assert set(fixture.reporter.diagnostics) == {DOC2.uri}

        fixture.workspace.update_document(make_doc("doc1.textile", '"x":/missing.textile'))
        await fixture.idle()

        assert set(fixture.reporter.diagnostics) == {DOC2.uri}
        fixture.close()

    @pytest.mark.asyncio
    async def test_recompute_when_disabled(self):
        fixture = await _started(DOC1, DOC2, options=DiagnosticOptions(enabled=False))

        state = await fixture.manager.recompute_diagnostic_state(DOC1)

        assert state.diagnostics == []
        assert fixture.reporter.get(DOC1.uri) == []
        fixture.close()
