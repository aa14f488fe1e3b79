from conftest import render_note_block

from promptlayers.config import L2CompactionConfig
from promptlayers.domain.context.l2_compactor import (
    compact_by_section,
    compact_l3_for_l2,
    compact_segment_for_l2,
    compact_xml_block,
    escape_xml_attr,
    extract_source,
    get_l2_refetch_instruction,
    has_prior_context_blocks,
    truncate_with_ellipsis,
)


class TestTruncateWithEllipsis:

    def test_short_text_unchanged(self):
        assert truncate_with_ellipsis("short", 100) == "short"

    def test_prefers_sentence_end(self):
        text = "a" * 60 + ". " + "b" * 100
        assert truncate_with_ellipsis(text, 100) == "a" * 60 + ". ..."

    def test_paragraph_break(self):
        text = "a" * 70 + "\n\n" + "b" * 100
        assert truncate_with_ellipsis(text, 100) == "a" * 70 + "\n\n..."

    def test_word_break(self):
        text = "word " * 40
        result = truncate_with_ellipsis(text, 100)

        assert result == text[:100] + "..."
        assert not result[:-3].endswith("wor")

    def test_hard_cut_without_boundaries(self):
        assert truncate_with_ellipsis("x" * 200, 100) == "x" * 100 + "..."

    def test_ignores_boundaries_before_halfway(self):
        text = "Hi. " + "x" * 200
        assert truncate_with_ellipsis(text, 100) == text[:100] + "..."


class TestCompactBySection:

    def test_keeps_headings_with_previews(self):
        content = "# One\n" + "a" * 600 + "\n# Two\n" + "b" * 50

        result = compact_by_section(content, preview_chars=500, max_sections=20)

        assert result.startswith("# One\n")
        assert "# Two\n" + "b" * 50 in result
        assert "a" * 600 not in result

    def test_caps_number_of_sections(self):
        content = "\n".join(f"## Section {i}\nbody {i}" for i in range(25))

        result = compact_by_section(content, preview_chars=500, max_sections=20)

        assert "## Section 19" in result
        assert "## Section 20" not in result
        assert result.endswith("[... 5 more sections omitted]")

    def test_headings_inside_code_fences_are_ignored(self):
        content = "```\n# not a heading\n```\n" + "x" * 800

        result = compact_by_section(content, preview_chars=500, max_sections=20)

        assert result == content[:500] + "..."

    def test_text_before_first_heading_is_kept(self):
        content = "intro\n# Heading\nbody"
        assert compact_by_section(content, 500, 20) == "intro\n\n# Heading\nbody"


class TestCompactBlocks:

    def test_small_content_stays_verbatim(self):
        assert compact_l3_for_l2("tiny", "A.md", "note") == "tiny"

    def test_large_content_wrapped_in_prior_context(self):
        result = compact_l3_for_l2("word " * 600, 'A "quoted".md', "note")

        assert result.startswith('<prior_context source="A &quot;quoted&quot;.md" type="note">\n')
        assert result.endswith("\n</prior_context>")

    def test_custom_thresholds(self):
        config = L2CompactionConfig(verbatim_threshold=10, preview_chars_per_section=20, max_sections=2)
        result = compact_l3_for_l2("x" * 50, "A.md", "note", config)
        assert "x" * 20 + "..." in result

    def test_non_recoverable_block_never_compacted(self):
        block = "<selected_text>\n<content>" + "x" * 5000 + "</content>\n</selected_text>"
        assert compact_xml_block(block, "selected_text") == block

    def test_url_block_keyed_by_url(self):
        block = "<url_content>\n<url>https://a.example</url>\n<content>" + "x" * 5000 + "</content>\n</url_content>"

        result = compact_xml_block(block, "url_content")

        assert result.startswith('<prior_context source="https://a.example" type="url">')

    def test_extract_source_falls_back_through_tags(self):
        assert extract_source("<x><name>doc.pdf</name></x>") == "doc.pdf"
        assert extract_source("<x><url>u</url><name>n</name></x>") == "u"
        assert extract_source("<x></x>") == ""

    def test_escape_xml_attr(self):
        assert escape_xml_attr("a&b<c>'d'") == "a&amp;b&lt;c&gt;&apos;d&apos;"


class TestCompactSegmentForL2:

    def test_drops_selected_text_keeps_notes(self):
        text = render_note_block("A.md", "note") + "\n\n<selected_text><content>sel</content></selected_text>"

        assert compact_segment_for_l2(text) == render_note_block("A.md", "note")

    def test_tags_nested_in_note_content_survive(self):
        text = render_note_block("A.md", "quote: <selected_text>literal</selected_text> end")

        assert compact_segment_for_l2(text) == text

    def test_collapses_blank_lines_left_by_removed_blocks(self):
        text = "intro\n\n<web_selected_text>x</web_selected_text>\n\n\n\noutro"

        assert compact_segment_for_l2(text) == "intro\n\noutro"

    def test_refetch_instruction_removed(self):
        text = "before\n\n" + get_l2_refetch_instruction()
        assert compact_segment_for_l2(text) == "before"


def test_has_prior_context_blocks():
    assert has_prior_context_blocks('<prior_context source="A.md" type="note">x</prior_context>')
    assert not has_prior_context_blocks("<prior_context_note>x</prior_context_note>")
    assert not has_prior_context_blocks("plain")
