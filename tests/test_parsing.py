"""Tests for Textile parsing: slugs, block and link tokens, link extraction."""

from pathlib import Path

import pytest

from conftest import WORKSPACE_ROOT, make_doc, workspace_path
from textile_ls.models import ExternalHref, InternalHref, Position, Range, ReferenceHref, text_range
from textile_ls.parser.links import LinkComputer, LinkDefinitionSet, resolve_link
from textile_ls.parser.slugify import slugify


def _links(tokenizer, *lines, name="doc.textile"):
    return LinkComputer(tokenizer, WORKSPACE_ROOT).get_all_links(make_doc(name, *lines))


# =============================================================================
# Slugify
# =============================================================================


class TestSlugify:
    """Header text to slug conversion."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Hello World", "hello-world"),
            ("  Padded title  ", "padded-title"),
            ("What's new?", "whats-new"),
            ("a -- b", "a-b"),
            ("snake_case stays", "snake_case-stays"),
            ("Ünïcode Tëxt", "ünïcode-tëxt"),
            ("-leading and trailing-", "leading-and-trailing"),
            ("", ""),
        ],
    )
    def test_slugify(self, text, expected):
        """Known header texts produce the expected slugs."""
        assert slugify(text) == expected

    @pytest.mark.parametrize("text", ["A b C", "Hello,   World!", "x -- y", "Ünïcode", "1. Intro"])
    def test_idempotent(self, text):
        """Slugifying a slug changes nothing."""
        assert slugify(slugify(text)) == slugify(text)

    def test_case_and_whitespace_insensitive(self):
        """Case and runs of whitespace do not matter."""
        assert slugify("A  b") == slugify("a b")


# =============================================================================
# Tokenizer
# =============================================================================


class TestBlockTokens:
    """Block structure of a document."""

    def test_headers_with_levels(self, tokenizer):
        """Every h1-h6 line becomes a header token with its level."""
        doc = make_doc("doc.textile", "h1. One", "", "text", "", "h3. Three", "", "h6. Six")
        headers = tokenizer.tokenize(doc).headers()
        assert [(h.start_line, h.level) for h in headers] == [(0, 1), (4, 3), (6, 6)]

    def test_signature_length_includes_attributes(self, tokenizer):
        """The signature covers attributes and the spaces after the period."""
        doc = make_doc("doc.textile", "h2(#anchor){color:red}.  Title")
        (header,) = tokenizer.tokenize(doc).headers()
        assert header.signature_length == len("h2(#anchor){color:red}.  ")

    def test_header_needs_blank_line_separation(self, tokenizer):
        """A signature in the middle of a paragraph is plain text."""
        doc = make_doc("doc.textile", "Some text", "h2. Not a header")
        assert tokenizer.tokenize(doc).headers() == []

    def test_block_kinds(self, tokenizer):
        """Signatures, lists and tables map to their block kinds."""
        doc = make_doc(
            "doc.textile",
            "bq. quote",
            "",
            "bc. code",
            "",
            "* item",
            "",
            "|a|b|",
            "",
            "fn1. footnote",
            "",
            "plain",
        )
        kinds = [block.kind for block in tokenizer.tokenize(doc).blocks]
        assert kinds == ["blockquote", "code", "list", "table", "footnote", "paragraph"]

    def test_extended_block_spans_blank_lines(self, tokenizer):
        """bc.. continues over blank lines until the next signature."""
        doc = make_doc("doc.textile", "bc.. first", "", "second", "", "p. after")
        blocks = tokenizer.tokenize(doc).blocks
        assert (blocks[0].kind, blocks[0].start_line, blocks[0].end_line) == ("code", 0, 2)
        assert blocks[1].kind == "paragraph"

    def test_html_pre_block(self, tokenizer):
        """<pre> runs to its closing tag."""
        doc = make_doc("doc.textile", "<pre>", "", "inside", "</pre>", "", "after")
        blocks = tokenizer.tokenize(doc).blocks
        assert (blocks[0].kind, blocks[0].start_line, blocks[0].end_line) == ("pre", 0, 3)

    def test_tokenize_is_cached_per_version(self, tokenizer):
        """The same snapshot returns the same tree object."""
        doc = make_doc("doc.textile", "h1. Title")
        assert tokenizer.tokenize(doc) is tokenizer.tokenize(doc)


class TestLinkTokens:
    """Link-shaped constructs and where they are ignored."""

    def test_link_and_bracketed_link(self, tokenizer):
        """Both link forms are found with their hrefs."""
        doc = make_doc("doc.textile", '"plain":a.textile and ["bracketed":b.textile]here')
        links = tokenizer.tokenize(doc).links
        assert [(t.kind, t.href) for t in links] == [("link", "a.textile"), ("link", "b.textile")]
        assert links[0].href_offset == len('"plain":')
        assert links[1].href_offset == len('"plain":a.textile and ["bracketed":')

    def test_link_with_title(self, tokenizer):
        """A (title) after the link text does not change the href."""
        doc = make_doc("doc.textile", '"text(the title)":page.textile')
        (token,) = tokenizer.tokenize(doc).links
        assert token.href == "page.textile"

    def test_trailing_punctuation_excluded(self, tokenizer):
        """Sentence punctuation after a link is not part of the href."""
        doc = make_doc("doc.textile", 'See "this":page.textile.')
        (token,) = tokenizer.tokenize(doc).links
        assert token.href == "page.textile"

    def test_image_and_image_link(self, tokenizer):
        """Images yield their source, and a :href suffix yields a link too."""
        doc = make_doc("doc.textile", "!logo.png(Logo)!", "", "!icon.png!:home.textile")
        tokens = tokenizer.tokenize(doc).links
        assert [(t.kind, t.href) for t in tokens] == [
            ("image", "logo.png"),
            ("image", "icon.png"),
            ("link", "home.textile"),
        ]

    def test_definition(self, tokenizer):
        """[name]href at the start of a line is a definition."""
        doc = make_doc("doc.textile", "[docs]https://example.com/docs")
        (token,) = tokenizer.tokenize(doc).links
        assert (token.kind, token.ref, token.href) == ("definition", "docs", "https://example.com/docs")
        assert token.ref_offset == 1
        assert token.href_offset == len("[docs]")

    def test_definition_requires_known_target_prefix(self, tokenizer):
        """Bare words after [name] are not definitions."""
        doc = make_doc("doc.textile", "[docs]somewhere")
        assert tokenizer.tokenize(doc).links == []

    @pytest.mark.parametrize(
        "lines",
        [
            ("bc. \"code\":a.textile",),
            ("pre. \"pre\":a.textile",),
            ("notextile. \"raw\":a.textile",),
            ("<pre>", "\"html pre\":a.textile", "</pre>"),
            ("Use @\"inline\":a.textile@ here",),
            ("bc. [docs]https://example.com",),
        ],
    )
    def test_no_links_in_code(self, tokenizer, lines):
        """Code, pre and notextile content never yields links."""
        doc = make_doc("doc.textile", *lines)
        assert tokenizer.tokenize(doc).links == []


# =============================================================================
# Link resolution and extraction
# =============================================================================


class TestResolveLink:
    """Href text to external or internal targets."""

    DOC = workspace_path("sub", "doc.textile")

    @pytest.mark.parametrize(
        "href",
        ["https://example.com", "http://example.com/a#b", "ftp://host/file", "mailto:someone", "vscode:open"],
    )
    def test_external(self, href):
        """Hrefs with a scheme are external and kept verbatim."""
        assert resolve_link(href, self.DOC, WORKSPACE_ROOT) == ExternalHref(uri=href)

    def test_fragment_only_targets_document(self):
        """'#frag' points at the document itself."""
        assert resolve_link("#intro", self.DOC, WORKSPACE_ROOT) == InternalHref(path=self.DOC, fragment="intro")

    def test_relative_to_document(self):
        """Relative paths resolve against the document's directory."""
        href = resolve_link("../other.textile#x", self.DOC, WORKSPACE_ROOT)
        assert href == InternalHref(path=workspace_path("other.textile"), fragment="x")

    def test_root_relative(self):
        """A leading slash is the workspace root."""
        href = resolve_link("/a/b.textile", self.DOC, WORKSPACE_ROOT)
        assert href == InternalHref(path=workspace_path("a", "b.textile"))

    def test_decodes_and_drops_query(self):
        """Percent-escapes are decoded and the query string ignored."""
        href = resolve_link("my%20doc.textile?v=1#sec%20two", self.DOC, WORKSPACE_ROOT)
        assert href == InternalHref(path=workspace_path("sub", "my doc.textile"), fragment="sec two")

    def test_empty(self):
        assert resolve_link("", self.DOC, WORKSPACE_ROOT) is None


class TestLinkComputer:
    """Extracted links and their ranges."""

    def test_source_ranges(self, tokenizer):
        """Href, path and fragment ranges are recorded separately."""
        (link,) = _links(tokenizer, '"x":doc.textile#frag')
        source = link.source
        assert source.href_text == "doc.textile#frag"
        assert source.path_text == "doc.textile"
        assert source.href_range == text_range(0, 4, 0, 20)
        assert source.fragment_range == text_range(0, 16, 0, 20)
        assert source.path_range == text_range(0, 4, 0, 15)
        assert source.range == text_range(0, 0, 0, 20)

    def test_link_without_fragment(self, tokenizer):
        (link,) = _links(tokenizer, "", 'Go "there":/other.textile now')
        assert link.source.fragment_range is None
        assert link.source.path_range == link.source.href_range == text_range(1, 11, 1, 25)

    def test_reference_link(self, tokenizer):
        """A bare word naming a definition becomes a reference link."""
        links = _links(tokenizer, '"the docs":docs', "", "[docs]https://example.com/docs")
        assert [link.kind for link in links] == ["link", "definition"]
        assert links[0].href == ReferenceHref(ref="docs")
        assert links[1].ref.text == "docs"
        assert links[1].ref.range == text_range(2, 1, 2, 5)
        assert links[1].href == ExternalHref(uri="https://example.com/docs")

    def test_undefined_bare_word_stays_internal(self, tokenizer):
        (link,) = _links(tokenizer, '"x":nowhere')
        assert link.href == InternalHref(path=workspace_path("nowhere"))

    def test_word_with_extension_is_not_a_reference(self, tokenizer):
        """Only bare words can name definitions."""
        links = _links(tokenizer, '"x":page.textile', "", "[page]./page.textile")
        assert links[0].href.kind == "internal"

    def test_image_link(self, tokenizer):
        links = _links(tokenizer, "!logo.png!:home.textile")
        assert [link.href for link in links] == [
            InternalHref(path=workspace_path("logo.png")),
            InternalHref(path=workspace_path("home.textile")),
        ]
        assert links[1].source.href_range == text_range(0, 11, 0, 23)

    def test_multiline_document_positions(self, tokenizer):
        """Offsets convert to the right line and character."""
        (link,) = _links(tokenizer, "h1. Title", "", "Intro line", 'then "link":#title')
        assert link.source.href_range == Range(Position(3, 12), Position(3, 18))
        assert link.href == InternalHref(path=workspace_path("doc.textile"), fragment="title")


class TestLinkDefinitionSet:
    def test_first_definition_wins(self, tokenizer):
        """Duplicate names keep the first definition."""
        links = _links(tokenizer, "[a]https://first.example", "[a]https://second.example")
        definitions = LinkDefinitionSet(links)
        assert len(definitions) == 1
        assert "a" in definitions
        assert definitions.lookup("a").href == ExternalHref(uri="https://first.example")

    def test_lookup_is_case_sensitive(self, tokenizer):
        definitions = LinkDefinitionSet(_links(tokenizer, "[Docs]https://example.com"))
        assert definitions.lookup("docs") is None
        assert isinstance(definitions.lookup("Docs").href, ExternalHref)


def test_paths_are_normalized():
    """Dot segments are folded out of resolved paths."""
    href = resolve_link("./a/../b.textile", workspace_path("doc.textile"), WORKSPACE_ROOT)
    assert href.path == Path("/workspace/b.textile")
