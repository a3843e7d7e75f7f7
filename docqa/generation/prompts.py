"""
Prompt templates for the document QA engine.

Keeping templates in a separate module makes them easy to iterate on
without touching retrieval or generation logic.
"""

# ---------------------------------------------------------------------------
# Answer synthesis (synthesis tier)
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a document question-answering assistant. You answer questions about \
the user's uploaded documents by synthesising ONLY the retrieved context below.

CORE PRINCIPLES:
- Answer based ONLY on the provided context. Do NOT add outside facts.
- If the context lacks enough information, say so directly.
- Cite sources using the format [Source N].
- Be comprehensive but concise; use bullet points or numbered steps when helpful.
- Explain technical terms when they appear in the context.
- If sources conflict, point out the difference and name the documents.
"""

ANSWER_PROMPT = """\
{system_prompt}
QUESTION:
{question}

RETRIEVED CONTEXT:
{context}

ANSWER:
"""

SOURCE_HEADER = "[Source {index} (from: {name})]"

# ---------------------------------------------------------------------------
# Preprocessing tier: query rewrite, HyDE, per-chunk relevance scoring
# ---------------------------------------------------------------------------

REWRITE_PROMPT = """\
Rewrite the following question into a search query that will retrieve the most \
relevant passages from a document collection. Keep the key entities, add close \
synonyms for important terms, and drop filler words.

Return ONLY the rewritten query on a single line.

Question: {question}
"""

HYDE_PROMPT = """\
Write a short, factual passage (3-5 sentences) that would directly answer the \
question below, as it might appear in a reference document. Do not mention \
the question itself.

Question: {question}

Passage:
"""

RERANK_PROMPT = """\
Rate how relevant the passage is to the question on a scale of 1 to 10.

  9-10: Directly answers the question with specific facts
  6-8 : Relevant, contains useful partial information
  3-5 : Tangentially related
  1-2 : Irrelevant

Question: {question}

Passage:
{passage}

Respond with a single number from 1 to 10.
"""

# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------

NO_CONTEXT_RESPONSE = (
    "I couldn't find relevant information in the uploaded documents to answer "
    "your question. Try rephrasing it, or upload a document that covers this topic."
)

GENERATION_FALLBACK_PREFIX = (
    "I encountered an issue generating a detailed answer. "
    "Based on the available information:\n\n"
)
