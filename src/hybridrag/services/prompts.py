"""System prompt policy for grounded answers."""

from __future__ import annotations

# Separates the streamed answer from the JSON source list; callers split on it.
SOURCES_DELIMITER = "\n\n__SOURCES__\n"
FOLLOW_UP_DELIMITER = "---FOLLOW_UP---"

BASE_PERSONA = "You are a precise research assistant answering questions about the user's documents."

NO_CONTEXT_INSTRUCTION = (
    "IMPORTANT: No relevant documents or web results were found for this question. "
    "Do NOT invent document names, titles, quotes or contents, and never claim that an answer comes from the user's documents. "
    "Tell the user plainly that no relevant documents were found and suggest uploading documents or enabling web search. "
    "You may answer from general knowledge only if you clearly label that part with the prefix \"General knowledge:\"."
)

DOCUMENT_ONLY_INSTRUCTION = (
    "Answer strictly from the WORKSPACE DOCUMENTS below. "
    "If the documents do not contain the answer, say so instead of guessing."
)

WEB_ONLY_INSTRUCTION = (
    "No matching workspace documents were found; the context below comes from LIVE WEB KNOWLEDGE. "
    "Ground your answer in these web sources and attribute every claim to the site it came from."
)

HYBRID_INSTRUCTION = (
    "Prioritise the WORKSPACE DOCUMENTS below. Use LIVE WEB KNOWLEDGE only to supplement or update them, "
    "and make clear which statements come from the web."
)

CITATION_INSTRUCTION = (
    "Cite sources inline with their numeric markers, e.g. [1] or [2][3]. "
    "Only use numbers that appear in the context; never invent a citation."
)

FOLLOW_UP_INSTRUCTION = (
    f"End your response with a line containing only {FOLLOW_UP_DELIMITER} followed by exactly three "
    "suggested follow-up questions, one per line."
)


def build_system_prompt(context: str, *, has_doc_context: bool, has_web_context: bool) -> str:
    if has_doc_context and has_web_context:
        policy = HYBRID_INSTRUCTION
    elif has_doc_context:
        policy = DOCUMENT_ONLY_INSTRUCTION
    elif has_web_context:
        policy = WEB_ONLY_INSTRUCTION
    else:
        policy = NO_CONTEXT_INSTRUCTION

    parts = [BASE_PERSONA, policy, CITATION_INSTRUCTION, FOLLOW_UP_INSTRUCTION]
    if context:
        parts.append(f"Context:\n{context}")
    return "\n\n".join(parts)
