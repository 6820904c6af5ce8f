# asknotes/prompt.py
"""
Сборка grounded-промпта: ровно два сообщения (system + user).

От этих строк зависят интерпретатор ответа и распознавание отказа:
точная строка-отказ и точный набор ключей JSON задаются только здесь.
"""
from __future__ import annotations

from typing import Dict, List, Sequence

from .schemas import MemoryTurn, RetrievedChunk

ANSWER_KEYS = ("answer", "confidence", "evidence", "found")
ANSWER_DIRECTIVE = "ANSWER:"


def refusal_sentinel(subject_name: str) -> str:
    return f"Not found in your notes for [{subject_name}]"


def _format_chunk(chunk: RetrievedChunk, max_chars: int) -> str:
    meta = chunk.metadata
    page = meta.page if meta.page is not None else "UnknownPage"
    return "\n".join([
        "[CHUNK_START]",
        f"chunkId: {meta.chunk_id or chunk.id}",
        f"fileName: {meta.file_name or 'UnknownFile'}",
        f"page: {page}",
        f"score: {chunk.score:.6f}",
        "text:",
        chunk.text[:max_chars],
        "[CHUNK_END]",
    ])


def _format_memory(turns: Sequence[MemoryTurn]) -> str:
    if not turns:
        return "No prior thread memory."
    return "\n\n".join(
        "\n".join([
            f"[MEMORY_TURN_{i + 1}]",
            f"question: {t.question}",
            f"answer: {t.answer}",
            f"createdAtIso: {t.created_at_iso}",
            "[/MEMORY_TURN]",
        ])
        for i, t in enumerate(turns)
    )


_ANSWER_WRITING_RULES = [
    "ANSWER WRITING RULES:",
    "- Write the answer as a clear, detailed, well-structured explanation that directly addresses the student's question.",
    "- Use Markdown formatting in the answer: **bold** for key terms, bullet points or numbered lists for steps/items, and headings (## or ###) for sections when the answer is long.",
    "- Explain concepts thoroughly as a knowledgeable tutor would, not by copy-pasting the notes.",
    "- Synthesize information from multiple chunks when relevant to give a complete answer.",
    "- Include examples from the notes when available to illustrate points.",
    "- Keep the language clear and student-friendly.",
]


class PromptAssembler:
    def __init__(self, max_chunk_chars: int = 2000):
        self.max_chunk_chars = max_chunk_chars

    def _system_json(self, subject_name: str) -> str:
        sentinel = refusal_sentinel(subject_name)
        return "\n".join([
            f'You are a helpful study assistant for the subject "{subject_name}". '
            "Answer questions using ONLY the provided context from the student's notes.",
            "",
            "RESPONSE FORMAT:",
            "Return EXACTLY one of the following outputs:",
            "",
            "1) A strict JSON object with this schema:",
            "{",
            '  "answer": "<your detailed, well-formatted answer>",',
            '  "confidence": "High" | "Medium" | "Low",',
            '  "evidence": ["<exact quote from notes backing claim 1>", "<exact quote 2>", ...],',
            '  "found": true',
            "}",
            "",
            f'2) The exact string: "{sentinel}"',
            "",
            *_ANSWER_WRITING_RULES,
            "",
            "EVIDENCE RULES:",
            "- The 'evidence' array should contain 2-5 short, exact quotes from the provided context that support your answer.",
            "- Each evidence string should be a direct quote, not a paraphrase.",
            "",
            "STRICT RULES:",
            "- Never include markdown code fences around the JSON output itself.",
            "- Never add extra keys beyond answer, confidence, evidence, and found.",
            "- If the context does not contain enough information to answer, output the exact Not Found string.",
            "- Do NOT make up information that is not in the provided context.",
        ])

    def _system_stream(self, subject_name: str) -> str:
        # ответ стримится студенту как есть, поэтому без JSON-обёртки
        sentinel = refusal_sentinel(subject_name)
        return "\n".join([
            f'You are a helpful study assistant for the subject "{subject_name}". '
            "Answer questions using ONLY the provided context from the student's notes.",
            "",
            "RESPONSE FORMAT:",
            "Return EXACTLY one of the following outputs:",
            "",
            "1) The answer itself as Markdown prose, with no preamble and no JSON.",
            "",
            f'2) The exact string: "{sentinel}"',
            "",
            *_ANSWER_WRITING_RULES,
            "",
            "STRICT RULES:",
            "- Never wrap the answer in code fences.",
            "- If the context does not contain enough information to answer, output the exact Not Found string.",
            "- Do NOT make up information that is not in the provided context.",
        ])

    def build(
        self,
        subject_name: str,
        question: str,
        chunks: Sequence[RetrievedChunk],
        thread_memory: Sequence[MemoryTurn],
        streaming: bool = False,
    ) -> List[Dict[str, str]]:
        system = self._system_stream(subject_name) if streaming else self._system_json(subject_name)
        context = "\n\n".join(_format_chunk(c, self.max_chunk_chars) for c in chunks)
        user = "\n\n".join([
            f"Subject: {subject_name}",
            f"Question: {question}",
            "THREAD_MEMORY_START",
            _format_memory(thread_memory),
            "THREAD_MEMORY_END",
            "CONTEXT_CHUNKS_START",
            context,
            "CONTEXT_CHUNKS_END",
        ])
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]


def answer_directive(text: str) -> str:
    """Текст, который live-модель должна произнести вслух."""
    return f"{ANSWER_DIRECTIVE} {text}"
