"""Unit tests for the stage 6 chapter sub-pipeline."""

import json
from unittest.mock import patch

import pytest

from bible_fakes import (
    CHAPTER_NUMBER,
    ScriptedLLMClient,
    chapter_payload,
    detail_response,
    outline_payload,
)
from storybible.generators.chapter_breakdown import (
    ChapterSubPipeline,
    degraded_chapter,
    normalize_outline,
    unwrap_chapter_payload,
)
from storybible.prompts.bible_prompts import CHAPTER_DETAIL_SYSTEM_PROMPT, CHAPTER_OUTLINE_SYSTEM_PROMPT
from storybible.validators.schema import (
    ChapterBreakdown,
    ChapterOutlineEntry,
    ChapterStatus,
    FailureKind,
    StageFailure,
    StageResult,
)


def failing_chapters(*numbers):
    """Detail reply that never yields scenes for ``numbers``."""

    def reply(user_prompt):
        number = int(CHAPTER_NUMBER.search(user_prompt).group(1))
        if number in numbers:
            return "Sorry, I lost track of this chapter."
        return detail_response(user_prompt)

    return reply


def pipeline(detail_reply, outline_reply=None, **kwargs):
    client = ScriptedLLMClient(
        {
            CHAPTER_OUTLINE_SYSTEM_PROMPT: outline_reply or json.dumps(outline_payload(12)),
            CHAPTER_DETAIL_SYSTEM_PROMPT: detail_reply,
        }
    )
    return ChapterSubPipeline(client, **kwargs), client


class TestNormalizeOutline:
    def test_exact_count(self):
        outline = normalize_outline(outline_payload(12)["chapters"], 12)

        assert [entry.number for entry in outline.entries] == list(range(1, 13))
        assert outline.synthesized == []
        assert outline.entries[0].plot_beats == ["catalyst"]

    def test_short_outline_is_padded(self):
        outline = normalize_outline(outline_payload(10)["chapters"], 12)

        assert len(outline.entries) == 12
        assert outline.synthesized == [11, 12]
        assert outline.entries[11].title is None

    def test_long_outline_is_cut(self):
        outline = normalize_outline(outline_payload(14)["chapters"], 12)

        assert len(outline.entries) == 12
        assert outline.entries[-1].number == 12

    def test_entries_renumbered_by_position(self):
        raw = [{"number": 7, "title": "First"}, {"number": 7, "title": "Second"}]
        outline = normalize_outline(raw, 2)

        assert [(entry.number, entry.title) for entry in outline.entries] == [(1, "First"), (2, "Second")]

    def test_unusable_entry_is_synthesized(self):
        raw = [{"title": "Fine"}, 42, None]
        outline = normalize_outline(raw, 3)

        assert outline.synthesized == [2, 3]
        assert outline.entries[0].title == "Fine"
        assert outline.entries[2] == ChapterOutlineEntry(number=3)

    def test_text_entry_becomes_purpose(self):
        outline = normalize_outline(["  They meet at the harbor  "], 1)

        assert outline.synthesized == []
        assert outline.entries[0].purpose == "They meet at the harbor"

    def test_loose_field_shapes_accepted(self):
        raw = [
            {"title": 7, "pov": {"name": "Lucía"}, "plot_beats": [3, 4]},
            {"title": "Bad beats", "plot_beats": "catalyst"},
            {"plot_beats": {"beat": "midpoint"}},
        ]
        outline = normalize_outline(raw, 3)

        assert outline.synthesized == []
        assert outline.entries[0].title == "7"
        assert outline.entries[0].pov == {"name": "Lucía"}
        assert outline.entries[0].plot_beats == [3, 4]
        assert outline.entries[1].plot_beats == ["catalyst"]
        assert outline.entries[2].plot_beats == [{"beat": "midpoint"}]

    def test_extra_outline_fields_kept(self):
        outline = normalize_outline([{"title": "One", "mood": "tense"}], 1)
        assert outline.entries[0].model_dump()["mood"] == "tense"


class TestChapterPayload:
    def test_unwrap_chapters_wrapper(self):
        inner = chapter_payload(3)
        assert unwrap_chapter_payload({"chapters": [inner]}) == inner

    def test_plain_payload_untouched(self):
        inner = chapter_payload(3)
        assert unwrap_chapter_payload(inner) is inner

    def test_degraded_chapter(self):
        chapter = degraded_chapter(ChapterOutlineEntry(number=4, title="Storm"), attempts=2)

        assert chapter.status == ChapterStatus.DEGRADED
        assert chapter.scenes == []
        assert chapter.attempts == 2
        assert chapter.hook.description == "Chapter concludes"
        assert chapter.number == 4


class TestChapterSubPipeline:
    """Test outline plus detail passes with degradation."""

    def test_all_chapters_detailed(self, full_context):
        sub_pipeline, client = pipeline(detail_response)

        result = sub_pipeline.execute(full_context)

        assert isinstance(result, StageResult)
        assert result.stage == 6
        assert result.key == "chapter_breakdown"
        breakdown = result.data
        assert isinstance(breakdown, ChapterBreakdown)
        assert len(breakdown.chapters) == 12
        assert all(chapter.status == ChapterStatus.DETAILED for chapter in breakdown.chapters)
        assert breakdown.chapters[4].scenes[0].events == ["Event 5.1", "Event 5.2"]
        assert breakdown.chapters[4].hook.type == "question"
        assert breakdown.pov_distribution == {"Lucía": "50%", "Tomás": "50%"}
        assert breakdown.coherence_check == {
            "chapter_count_correct": "Yes",
            "chapters_detailed": "12/12 chapters have scenes",
            "chapters_degraded": "none",
        }
        assert result.coherence.valid is True
        assert len(client.calls) == 13

    def test_degraded_chapters_keep_their_place(self, full_context):
        """Test that chapters 5 and 9 degrade without shrinking the list."""
        sub_pipeline, client = pipeline(failing_chapters(5, 9))

        result = sub_pipeline.execute(full_context)

        chapters = result.data.chapters
        assert len(chapters) == 12
        assert [chapter.number for chapter in chapters] == list(range(1, 13))
        for chapter in chapters:
            if chapter.number in (5, 9):
                assert chapter.scenes == []
                assert chapter.status == ChapterStatus.DEGRADED
                assert chapter.attempts == 2
            else:
                assert chapter.scenes
                assert chapter.status == ChapterStatus.DETAILED
        assert result.data.coherence_check["chapters_degraded"] == "5, 9"
        assert result.data.coherence_check["chapters_detailed"] == "10/12 chapters have scenes"
        # 1 outline call, 10 single detail calls, 2 chapters x 2 attempts
        assert len(client.calls) == 15

    def test_second_attempt_succeeds(self, full_context):
        attempts = {"count": 0}

        def flaky(user_prompt):
            if "CHAPTER 3 OF" in user_prompt:
                attempts["count"] += 1
                if attempts["count"] == 1:
                    return RuntimeError("timeout")
            return detail_response(user_prompt)

        sub_pipeline, _ = pipeline(flaky)
        chapter = sub_pipeline.execute(full_context).data.chapters[2]

        assert chapter.status == ChapterStatus.DETAILED
        assert chapter.attempts == 2

    @pytest.mark.parametrize(
        "reply",
        [
            json.dumps({"scenes": []}),
            json.dumps({"reader_learns": ["nothing"]}),
            json.dumps({"scenes": "not a list"}),
            "no json at all",
        ],
    )
    def test_soft_failures_degrade(self, full_context, reply):
        sub_pipeline, _ = pipeline(reply, max_attempts=1)

        result = sub_pipeline.execute(full_context)

        assert isinstance(result, StageResult)
        assert result.data.degraded_count == 12
        assert all(chapter.attempts == 1 for chapter in result.data.chapters)

    def test_wrapped_detail_and_beats_alias(self, full_context):
        wrapped = json.dumps(
            {"chapters": [{"scenes": [{"location": "Harbor", "beats": ["They meet"]}], "hook": {"type": "cliffhanger"}}]}
        )
        sub_pipeline, _ = pipeline(wrapped)

        chapter = sub_pipeline.execute(full_context).data.chapters[0]

        assert chapter.scenes[0].events == ["They meet"]
        assert chapter.hook.type == "cliffhanger"
        assert chapter.hook.description == "Chapter concludes"

    def test_numeric_plot_beats_still_detailed(self, full_context):
        outline = outline_payload(12)
        for chapter in outline["chapters"]:
            chapter["plot_beats"] = [chapter["number"]]
        sub_pipeline, client = pipeline(detail_response, outline_reply=json.dumps(outline))

        breakdown = sub_pipeline.execute(full_context).data

        assert breakdown.degraded_count == 0
        assert len(client.calls_for(CHAPTER_DETAIL_SYSTEM_PROMPT)) == 12
        assert breakdown.chapters[2].outline.plot_beats == [3]
        assert breakdown.chapters[2].outline.title == "Chapter 3"
        assert breakdown.chapters[2].outline.pov == "Lucía"

    def test_object_events_and_text_scenes(self, full_context):
        reply = json.dumps(
            {
                "scenes": [
                    {"location": {"name": "Harbor"}, "events": [{"what": "She waits"}]},
                    "They argue on the pier",
                ]
            }
        )
        sub_pipeline, _ = pipeline(reply)

        chapter = sub_pipeline.execute(full_context).data.chapters[0]

        assert chapter.status == ChapterStatus.DETAILED
        assert chapter.scenes[0].location == {"name": "Harbor"}
        assert chapter.scenes[0].events == [{"what": "She waits"}]
        assert chapter.scenes[1].events == ["They argue on the pier"]

    def test_text_cast_entries_still_detailed(self, full_context):
        """Test that a protagonist written as plain text does not break the detail prompts."""
        characters = {**full_context.require("characters"), "protagonist": "Lucía", "love_interests": ["Tomás"]}
        context = full_context.with_output("characters", characters)
        sub_pipeline, client = pipeline(detail_response)

        breakdown = sub_pipeline.execute(context).data

        assert breakdown.degraded_count == 0
        assert "Protagonist: unknown" in client.calls_for(CHAPTER_DETAIL_SYSTEM_PROMPT)[0]

    @patch("storybible.generators.chapter_breakdown.build_chapter_detail_user_prompt")
    def test_unexpected_error_is_a_stage_failure(self, mock_build, full_context):
        mock_build.side_effect = ValueError("template broken")
        sub_pipeline, client = pipeline(detail_response)

        result = sub_pipeline.execute(full_context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.UNEXPECTED
        assert result.message == "Stage 6 failed: template broken"
        assert client.calls_for(CHAPTER_DETAIL_SYSTEM_PROMPT) == []

    def test_short_outline_degrades_missing_chapters(self, full_context):
        sub_pipeline, client = pipeline(detail_response, outline_reply=json.dumps(outline_payload(10)))

        result = sub_pipeline.execute(full_context)

        chapters = result.data.chapters
        assert len(chapters) == 12
        assert chapters[10].is_degraded and chapters[10].attempts == 0
        assert chapters[11].is_degraded
        assert len(client.calls_for(CHAPTER_DETAIL_SYSTEM_PROMPT)) == 10

    def test_details_follow_outline_in_order(self, full_context):
        sub_pipeline, client = pipeline(detail_response)

        sub_pipeline.execute(full_context)

        assert client.calls[0][0] == CHAPTER_OUTLINE_SYSTEM_PROMPT
        numbers = [int(CHAPTER_NUMBER.search(prompt).group(1)) for prompt in client.calls_for(CHAPTER_DETAIL_SYSTEM_PROMPT)]
        assert numbers == list(range(1, 13))

    def test_chapter_callback(self, full_context):
        seen = []
        sub_pipeline, _ = pipeline(
            failing_chapters(2), on_chapter=lambda chapter, total: seen.append((chapter.number, chapter.status, total))
        )

        sub_pipeline.execute(full_context)

        assert len(seen) == 12
        assert seen[1] == (2, ChapterStatus.DEGRADED, 12)

    def test_callback_errors_ignored(self, full_context):
        def broken(chapter, total):
            raise RuntimeError("display crashed")

        sub_pipeline, _ = pipeline(detail_response, on_chapter=broken)

        assert isinstance(sub_pipeline.execute(full_context), StageResult)

    def test_outline_model_failure(self, full_context):
        sub_pipeline, client = pipeline(detail_response, outline_reply=RuntimeError("overloaded"))

        result = sub_pipeline.execute(full_context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.MODEL_CALL
        assert "overloaded" in result.message
        assert client.calls_for(CHAPTER_DETAIL_SYSTEM_PROMPT) == []

    def test_outline_parse_failure(self, full_context):
        sub_pipeline, _ = pipeline(detail_response, outline_reply="Chapter one: they meet.")

        result = sub_pipeline.execute(full_context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.EXTRACTION
        assert result.message == "Stage 6 outline parse failed: Could not find valid JSON in response"

    def test_outline_without_chapters(self, full_context):
        sub_pipeline, _ = pipeline(detail_response, outline_reply=json.dumps({"chapters": []}))

        result = sub_pipeline.execute(full_context)

        assert isinstance(result, StageFailure)
        assert result.kind == FailureKind.PRIMARY_FIELDS
        assert result.message == "Stage 6 outline missing required fields: chapters"
