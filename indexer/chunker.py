from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional
import math
import re

PARAGRAPH_BREAK = re.compile(r'\n[ \t]*\n')
PARAGRAPH_SEPARATOR = "\n\n"

# Hiragana, katakana, CJK unified ideographs (+ extension A), hangul, compatibility ideographs
CJK_CHARS = re.compile(r'[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff]')


@dataclass
class Chunk:
    index: int
    content: str
    token_count: int


def estimate_tokens(text: str | None) -> int:
    """Rough token estimation.

    Non-space-delimited scripts count one token per character; everything else
    counts the larger of its word count and ~4 chars per token.
    """
    if not text or not text.strip():
        return 0
    cjk = len(CJK_CHARS.findall(text))
    rest = CJK_CHARS.sub(' ', text)
    words = len(rest.split())
    chars = len(re.sub(r'\s+', '', rest))
    return max(1, cjk + max(words, math.ceil(chars / 4)))


class DocumentChunker:
    """Paragraph-aware chunker with trailing-context overlap."""

    def __init__(self, max_chunk_chars: int = 1000, overlap_chars: int = 200):
        self.max_chunk_chars = max_chunk_chars if max_chunk_chars > 0 else 1000
        self.overlap_chars = overlap_chars if overlap_chars > 0 else 200

    def _resolve_sizes(self, max_chunk_chars: Optional[int], overlap_chars: Optional[int]):
        max_chars = max_chunk_chars if max_chunk_chars and max_chunk_chars > 0 else self.max_chunk_chars
        overlap = overlap_chars if overlap_chars and overlap_chars > 0 else self.overlap_chars
        # An overlap as large as the chunk would seed every chunk with a full copy of the last one.
        if overlap >= max_chars:
            overlap = max_chars // 5
        return max_chars, overlap

    def _split_paragraphs(self, text: str) -> List[str]:
        return [p.strip('\n') for p in PARAGRAPH_BREAK.split(text) if p.strip()]

    def chunk(self, text: str | None, max_chunk_chars: Optional[int] = None,
              overlap_chars: Optional[int] = None) -> List[Chunk]:
        """Split text into overlapping chunks along paragraph boundaries.

        A paragraph longer than ``max_chunk_chars`` is emitted whole as its own
        chunk. Each new chunk starts with the last ``overlap_chars`` characters
        of the previous chunk when that still fits.
        """
        if not text or not text.strip():
            return []

        max_chars, overlap = self._resolve_sizes(max_chunk_chars, overlap_chars)

        if len(text) <= max_chars:
            return [Chunk(index=0, content=text, token_count=estimate_tokens(text))]

        pieces: List[str] = []
        current = ""
        for paragraph in self._split_paragraphs(text):
            if current and len(current) + len(PARAGRAPH_SEPARATOR) + len(paragraph) <= max_chars:
                current = current + PARAGRAPH_SEPARATOR + paragraph
                continue

            if current:
                pieces.append(current)

            if len(paragraph) > max_chars:
                pieces.append(paragraph)
                current = ""
                continue

            seed = pieces[-1][-overlap:] if pieces else ""
            if seed and len(seed) + len(PARAGRAPH_SEPARATOR) + len(paragraph) <= max_chars:
                current = seed + PARAGRAPH_SEPARATOR + paragraph
            else:
                current = paragraph

        if current:
            pieces.append(current)

        return [
            Chunk(index=i, content=piece, token_count=estimate_tokens(piece))
            for i, piece in enumerate(pieces)
        ]
