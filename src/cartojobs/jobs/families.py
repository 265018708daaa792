"""Task families and the task kinds each one runs.

Task names are a closed set: every name a submitter may use is a
``TaskKind`` member, and each kind belongs to exactly one family (and so
to exactly one queue). Names outside the set resolve to ``None`` and take
the worker's unknown-task path.
"""

from __future__ import annotations

from enum import Enum


class TaskFamily(str, Enum):
    """A category of work with its own queue and workers."""

    IMPORT = "import"
    EXPORT = "export"
    AI = "ai"

    @property
    def queue_name(self) -> str:
        return f"{self.name}_QUEUE"

    @property
    def kinds(self) -> tuple[TaskKind, ...]:
        return tuple(kind for kind in TaskKind if kind.family is self)


class TaskKind(str, Enum):
    """Symbolic task names carried on job records."""

    IMPORT = "import"
    EXPORT = "export"
    TEXT2MAP = "text2map"
    OCR2VECTOR = "ocr2vector"
    STYLE_FROM_PROMPT = "styleFromPrompt"

    @property
    def family(self) -> TaskFamily:
        return _FAMILY_OF[self]

    @classmethod
    def parse(cls, name: str) -> TaskKind | None:
        """Resolve a task name, or None if it is not a known kind."""
        try:
            return cls(name)
        except ValueError:
            return None


_FAMILY_OF: dict[TaskKind, TaskFamily] = {
    TaskKind.IMPORT: TaskFamily.IMPORT,
    TaskKind.EXPORT: TaskFamily.EXPORT,
    TaskKind.TEXT2MAP: TaskFamily.AI,
    TaskKind.OCR2VECTOR: TaskFamily.AI,
    TaskKind.STYLE_FROM_PROMPT: TaskFamily.AI,
}
