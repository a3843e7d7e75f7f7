"""
Narrative Assembler
--------------------
Widens the top context chunk with its immediate neighbours so the
answer model sees the surrounding narrative:

    [Previous Context]
    ...
    [Main Content]
    ...
    [Following Context]
    ...

Neighbours come from the hierarchy store through previous_chunk_id /
next_chunk_id. A missing or evicted neighbour is simply left out.
"""
from __future__ import annotations

from loguru import logger

from docqa.schemas import AssembledContext, ContextChunk
from docqa.store.hierarchy import ChunkHierarchyStore


class NarrativeAssembler:
    def __init__(self, store: ChunkHierarchyStore, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled

    def assemble(self, top_chunk: ContextChunk) -> AssembledContext:
        main = top_chunk.content
        if not self.enabled:
            return AssembledContext(
                context=main,
                metadata={"narrative": False, "expansion_ratio": 1.0},
            )

        prev_id = top_chunk.metadata.get("previous_chunk_id")
        next_id = top_chunk.metadata.get("next_chunk_id")
        previous = self.store.get_parent(prev_id) if prev_id else None
        following = self.store.get_parent(next_id) if next_id else None

        sections = []
        if previous is not None:
            sections.append(f"[Previous Context]\n{previous.content}")
        sections.append(f"[Main Content]\n{main}")
        if following is not None:
            sections.append(f"[Following Context]\n{following.content}")
        context = "\n\n".join(sections)

        ratio = len(context) / len(main) if main else 1.0
        logger.debug(
            f"[Assembler] {top_chunk.chunk_id}: prev={previous is not None} "
            f"next={following is not None} ratio={ratio:.2f}"
        )
        return AssembledContext(
            context=context,
            metadata={
                "narrative": True,
                "has_previous": previous is not None,
                "has_following": following is not None,
                "previous_chunk_id": previous.id if previous else None,
                "next_chunk_id": following.id if following else None,
                "original_length": len(main),
                "assembled_length": len(context),
                "expansion_ratio": round(ratio, 4),
            },
        )
