#!/usr/bin/env python3
"""Grounded-answer prompt templates with inline citations.

One system instruction (context-only answers, ``[n]`` citations tied to the
numbered source list, Markdown output) and one user turn carrying the
context, the citable sources and the question.
"""

from typing import List, Dict, Sequence

from citerag.context_assembler import format_sources_listing
from citerag.models import Source


class RAGPrompt:
    """Build single-turn messages for the generation backend."""

    SYSTEM_PROMPT = """You are a careful academic assistant.

INSTRUCTIONS:
1. Answer ONLY from the provided context. Do NOT use prior knowledge.
2. Add inline citations like [1], [2] matching the numbered source list.
3. Cite only numbers that appear in the source list. Never invent sources.
4. If the context does not contain the answer, say so plainly.
5. Keep output in Markdown.
"""

    NO_SOURCES_NOTE = "(no numbered sources; answer from the context without citations)"

    @staticmethod
    def build_user_prompt(question: str, context: str, sources: Sequence[Source]) -> str:
        """Build the user turn.

        Args:
            question: The user's question
            context: Numbered context window (synthesized or backend-supplied)
            sources: Citable sources, numbered as in the context

        Returns:
            Formatted user prompt
        """
        listing = format_sources_listing(sources) or RAGPrompt.NO_SOURCES_NOTE
        return (
            f"Context:\n{context}\n\n"
            f"Sources:\n{listing}\n\n"
            f"Question: {question}"
        )

    @staticmethod
    def build_messages(question: str, context: str, sources: Sequence[Source]) -> List[Dict[str, str]]:
        """System instruction plus one user turn, in chat-completions format."""
        return [
            {"role": "system", "content": RAGPrompt.SYSTEM_PROMPT},
            {"role": "user", "content": RAGPrompt.build_user_prompt(question, context, sources)},
        ]
