"""
Text Chunking

Splits uploaded course material into ordered, overlapping chunks sized
for embedding and for use as prompt snippets.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class ChunkingConfig:
    """Configuration for text chunking."""

    chunk_size: int = 800     # Target chunk size in characters
    chunk_overlap: int = 120  # Characters carried over from the previous chunk

    # Tried in order, coarsest first
    separators: List[str] = field(default_factory=lambda: [
        "\n\n",  # Paragraph
        "\n",    # Line
        ". ",    # Sentence
        "? ",
        "! ",
        "; ",
        " ",     # Word
    ])


class RecursiveChunker:
    """
    Hierarchical splitter.

    Pieces larger than the target are split again with the next finer
    separator; adjacent small pieces are then packed back together up to
    the target size.
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    def split(self, text: str) -> List[str]:
        """Chunk text into ordered strings."""
        pieces = self._split_recursive(text or "", self.config.separators)
        packed = self._pack(pieces)
        if self.config.chunk_overlap > 0:
            packed = self._overlap(packed)
        return packed

    def _split_recursive(self, text: str, separators: List[str]) -> List[str]:
        if not text.strip():
            return []
        if len(text) <= self.config.chunk_size:
            return [text]

        for position, separator in enumerate(separators):
            if separator not in text:
                continue
            parts = [part for part in text.split(separator) if part.strip()]
            if len(parts) < 2:
                continue

            finer = separators[position:]
            result: List[str] = []
            for part in parts:
                if len(part) > self.config.chunk_size:
                    result.extend(self._split_recursive(part, finer[1:] or finer))
                else:
                    result.append(part)
            return result

        return self._hard_split(text)

    def _hard_split(self, text: str) -> List[str]:
        size = self.config.chunk_size
        return [
            text[start:start + size].strip()
            for start in range(0, len(text), size)
            if text[start:start + size].strip()
        ]

    def _pack(self, pieces: List[str]) -> List[str]:
        chunks: List[str] = []
        current = ""
        for piece in pieces:
            piece = " ".join(piece.split())
            if not piece:
                continue
            if not current:
                current = piece
            elif len(current) + 1 + len(piece) <= self.config.chunk_size:
                current = f"{current} {piece}"
            else:
                chunks.append(current)
                current = piece
        if current:
            chunks.append(current)
        return chunks

    def _overlap(self, chunks: List[str]) -> List[str]:
        if len(chunks) <= 1:
            return chunks

        result = [chunks[0]]
        for previous, current in zip(chunks, chunks[1:]):
            tail = previous[-self.config.chunk_overlap:]
            # Start the carried tail on a word boundary
            space = tail.find(" ")
            if 0 < space < len(tail) - 1:
                tail = tail[space + 1:]
            result.append(f"{tail} {current}".strip())
        return result


__all__ = ["ChunkingConfig", "RecursiveChunker"]
