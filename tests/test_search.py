"""Tests for hybrid ranking, balanced merging and context packing."""

from __future__ import annotations

import math

import pytest

from notesrag.index.search import (
    assemble_section_context,
    build_section_query,
    cosine_similarity,
    merge_source_balanced,
    rank_chunks_hybrid,
    rank_slide_files_by_hybrid,
)
from notesrag.models import Candidate, Chunk, RankedSource, SlideFile


def _candidate(chunk_id: str, score: float, text: str = "text", group: str = "") -> Candidate:
    return Candidate(
        id=chunk_id,
        source_name=f"{chunk_id}.md",
        source_path=f"/{chunk_id}.md",
        text=text,
        score=score,
        source_group=group,
    )


class TestCosineSimilarity:
    """Test cosine similarity edge cases."""

    def test_basic(self) -> None:
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 1], [-1, -1]) == pytest.approx(-1.0)

    def test_length_mismatch(self) -> None:
        with pytest.raises(ValueError):
            cosine_similarity([1, 0], [1, 0, 0])

    def test_zero_vector(self) -> None:
        with pytest.raises(ValueError):
            cosine_similarity([0, 0], [1, 0])


class TestRankChunksHybrid:
    """Test chunk ranking."""

    def test_semantic_and_lexical_blend(self) -> None:
        chunks = [
            Chunk(id="a", source_name="n", source_path="/n", text="unrelated words"),
            Chunk(id="b", source_name="n", source_path="/n", text="pancreatitis management"),
            Chunk(id="c", source_name="n", source_path="/n", text="also unrelated"),
        ]
        embeddings = {"a": [0.0, 1.0], "b": [1.0, 0.0], "c": [0.5, 0.5]}

        ranked = rank_chunks_hybrid(
            query="pancreatitis",
            chunks=chunks,
            embedding_by_id=embeddings,
            query_embedding=[1.0, 0.0],
            source_group="note:felix",
        )

        assert ranked[0].id == "b"
        assert ranked[0].score == pytest.approx(1.0)
        assert ranked[0].lexical_score > 0
        assert all(item.source_group == "note:felix" for item in ranked)
        assert [item.id for item in ranked] == ["b", "c", "a"]

    def test_missing_embedding_scores_zero(self) -> None:
        chunks = [
            Chunk(id="a", source_name="n", source_path="/n", text="x"),
            Chunk(id="b", source_name="n", source_path="/n", text="x"),
        ]
        ranked = rank_chunks_hybrid(
            query="q", chunks=chunks, embedding_by_id={"b": [1.0]}, query_embedding=[1.0]
        )
        by_id = {item.id: item for item in ranked}
        assert by_id["a"].semantic_score == 0.0
        assert by_id["b"].semantic_score == pytest.approx(1.0)

    def test_ties_broken_by_id(self) -> None:
        chunks = [Chunk(id=cid, source_name="n", source_path="/n", text="same") for cid in ("z", "m", "a")]
        ranked = rank_chunks_hybrid(query="q", chunks=chunks, embedding_by_id={}, query_embedding=None)
        assert [item.id for item in ranked] == ["a", "m", "z"]
        assert all(item.score == 0 for item in ranked)

    def test_empty(self) -> None:
        assert rank_chunks_hybrid(query="q", chunks=[], embedding_by_id={}, query_embedding=[1.0]) == []


class TestRankSlideFiles:
    """Test deck ranking by summary."""

    def test_lexical_match_on_file_name(self) -> None:
        files = [
            SlideFile(file_name="vascular.pdf", source_path="/v", summary_text="aneurysm", summary_embedding=None),
            SlideFile(file_name="hbp.pdf", source_path="/h", summary_text="pancreatitis biliary", summary_embedding=None),
        ]
        ranked = rank_slide_files_by_hybrid(topic="pancreatitis", slide_files=files, query_embedding=None)
        assert [item.file_name for item in ranked] == ["hbp.pdf", "vascular.pdf"]
        assert ranked[0].score == pytest.approx(0.45)

    def test_ties_broken_by_file_name(self) -> None:
        files = [
            SlideFile(file_name=name, source_path="/", summary_text="", summary_embedding=[1.0, 0.0])
            for name in ("b.pdf", "a.pdf")
        ]
        ranked = rank_slide_files_by_hybrid(topic="x", slide_files=files, query_embedding=[1.0, 0.0])
        assert [item.file_name for item in ranked] == ["a.pdf", "b.pdf"]


class TestMergeSourceBalanced:
    """Test per-group capping before the global sort."""

    def test_small_group_not_crowded_out(self) -> None:
        sources = [
            RankedSource(
                source_group=f"big{g}",
                items=[_candidate(f"big{g}-{i:02d}", 1.0 - i * 0.001) for i in range(50)],
            )
            for g in range(3)
        ]
        sources.append(
            RankedSource(source_group="small", items=[_candidate(f"small-{i}", 0.1 - i * 0.001) for i in range(10)])
        )

        merged = merge_source_balanced(ranked_sources=sources, per_source_cap=5, candidate_limit=60)

        assert len(merged) == 20
        groups = [item.source_group for item in merged]
        assert groups.count("small") == 5
        assert all(groups.count(f"big{g}") == 5 for g in range(3))
        assert [item.score for item in merged] == sorted((item.score for item in merged), reverse=True)

    def test_candidate_limit_and_group_override(self) -> None:
        sources = [
            RankedSource(source_group="note:a", items=[_candidate("a1", 0.9, group="wrong"), _candidate("a2", 0.2)]),
            RankedSource(source_group="slides", items=[_candidate("s1", 0.5)]),
        ]
        merged = merge_source_balanced(ranked_sources=sources, per_source_cap=5, candidate_limit=2)
        assert [(item.id, item.source_group) for item in merged] == [("a1", "note:a"), ("s1", "slides")]
        assert sources[0].items[0].source_group == "wrong"

    def test_equal_scores_ordered_by_id(self) -> None:
        sources = [
            RankedSource(source_group="x", items=[_candidate("b", 0.5)]),
            RankedSource(source_group="y", items=[_candidate("a", 0.5)]),
        ]
        merged = merge_source_balanced(ranked_sources=sources)
        assert [item.id for item in merged] == ["a", "b"]


class TestAssembleSectionContext:
    """Test greedy packing under the character budget."""

    def test_skips_oversized_chunk_and_keeps_smaller_ones(self) -> None:
        chunks = [
            _candidate("big", 0.9, text="x" * 5000, group="slides"),
            _candidate("s1", 0.8, text="y" * 100, group="slides"),
            _candidate("s2", 0.7, text="z" * 100, group="slides"),
        ]
        selection = assemble_section_context(selected_chunks=chunks, context_budget_chars=1000)

        assert [item.id for item in selection.selected] == ["s1", "s2"]
        assert selection.used_chars == 2 * (100 + 220)

    def test_rendering_groups_and_titles(self) -> None:
        chunks = [
            _candidate("slide:hbp.pdf:p1:1", 0.9, text="slide text", group="slides"),
            _candidate("felix:1", 0.8, text="note text", group="note:felix"),
            _candidate("extra:1", 0.7, text="extra text", group="other"),
        ]
        selection = assemble_section_context(
            selected_chunks=chunks,
            group_order=["note:felix", "slides", "empty"],
            grouped_titles={
                "note:felix": "### Senior Note: Felix (Indexed)",
                "slides": "### Lecture Slides (Indexed)",
                "empty": "### Never rendered",
            },
        )

        assert selection.context_text == (
            "### Senior Note: Felix (Indexed)\n\n"
            "#### [felix:1] Source: felix:1.md\nnote text\n\n"
            "### Lecture Slides (Indexed)\n\n"
            "#### [slide:hbp.pdf:p1:1] Source: slide:hbp.pdf:p1:1.md\nslide text\n\n"
            "### other\n\n"
            "#### [extra:1] Source: extra:1.md\nextra text"
        )
        assert "Never rendered" not in selection.context_text

    def test_budget_never_exceeded(self) -> None:
        chunks = [_candidate(f"c{i}", 1.0, text="w" * (i * 37 % 400)) for i in range(60)]
        selection = assemble_section_context(selected_chunks=chunks, context_budget_chars=3000)
        assert selection.used_chars <= 3000
        assert selection.used_chars == sum(len(item.text) + 220 for item in selection.selected)

    def test_empty_selection(self) -> None:
        selection = assemble_section_context(selected_chunks=[])
        assert selection.context_text == ""
        assert selection.used_chars == 0


class TestBuildSectionQuery:
    """Test section query construction."""

    def test_known_section_uses_hint(self) -> None:
        query = build_section_query("Pancreatitis", "Mx")
        lines = query.split("\n")
        assert lines[0] == "Pancreatitis"
        assert lines[1] == "Section: Mx"
        assert lines[2].startswith("Focus: ")
        assert len(lines[2]) > len("Focus: mx")

    def test_unknown_section_falls_back_to_name(self) -> None:
        assert build_section_query("Hernia", "Prognosis").endswith("Focus: prognosis")


def test_scores_are_finite() -> None:
    chunks = [Chunk(id="a", source_name="n", source_path="/n", text="t")]
    ranked = rank_chunks_hybrid(
        query="t", chunks=chunks, embedding_by_id={"a": [0.0, 0.0]}, query_embedding=[1.0, 0.0]
    )
    assert math.isfinite(ranked[0].score)
