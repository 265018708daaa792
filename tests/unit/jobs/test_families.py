"""Tests for task families and kinds."""

from cartojobs.jobs import TaskFamily, TaskKind


class TestTaskFamily:
    def test_queue_names(self) -> None:
        assert [f.queue_name for f in TaskFamily] == ["IMPORT_QUEUE", "EXPORT_QUEUE", "AI_QUEUE"]

    def test_every_kind_has_one_family(self) -> None:
        """Kinds partition across families."""
        grouped = [kind for family in TaskFamily for kind in family.kinds]

        assert sorted(grouped) == sorted(TaskKind)

    def test_ai_kinds(self) -> None:
        assert TaskFamily.AI.kinds == (
            TaskKind.TEXT2MAP,
            TaskKind.OCR2VECTOR,
            TaskKind.STYLE_FROM_PROMPT,
        )


class TestTaskKind:
    def test_parse_known(self) -> None:
        assert TaskKind.parse("styleFromPrompt") is TaskKind.STYLE_FROM_PROMPT

    def test_parse_unknown(self) -> None:
        assert TaskKind.parse("vectorize") is None
        assert TaskKind.parse("STYLEFROMPROMPT") is None
