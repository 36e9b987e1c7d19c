"""Optional prompt context sources: long-term memory and the knowledge base."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

KNOWLEDGE_RESULTS = 3


@dataclass(frozen=True)
class KnowledgeChunk:
    doc_name: str
    content: str
    score: float = 0.0


class KnowledgeSearch(Protocol):
    """Query -> ranked chunks. Embedding and vector search live behind this."""

    async def search(self, query: str, limit: int) -> Sequence[KnowledgeChunk]: ...


class MemoryProvider(Protocol):
    """User -> remembered facts, already rendered as prompt text."""

    async def context_for(self, user_id: str) -> str: ...


def build_system_instruction(
    base: str,
    *,
    memory_context: str = "",
    knowledge: Sequence[KnowledgeChunk] = (),
) -> str:
    instruction = base
    if memory_context:
        instruction += f"\n\n--- What you remember about this user ---\n{memory_context}"
    if knowledge:
        rendered = "\n\n".join(f"[{chunk.doc_name}]: {chunk.content}" for chunk in knowledge)
        instruction += (
            "\n\n--- Knowledge base ---\n"
            "Use the following material when it is relevant. Do not cite file names "
            f"in the answer.\n{rendered}"
        )
    return instruction
