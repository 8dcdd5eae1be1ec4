"""RAG capability - similarity search over reference documentation."""

import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from backend.docpipe.models.pipeline import RagDocument

logger = logging.getLogger(__name__)

_TITLE = re.compile(r"^#\s+(.+)$", re.MULTILINE)


class RagService(Protocol):
    """Protocol for similarity search implementations."""

    async def search_similar_docs(self, query: str, top_k: int) -> list[RagDocument]:
        """Search reference docs by query.

        Args:
            query: Free-text or semantic query
            top_k: Maximum number of results

        Returns:
            Documents sorted by similarity descending
        """
        ...


class ReferenceDoc(BaseModel):
    """Document held by the keyword search fallback."""

    id: str
    file_path: str
    title: str
    content: str


class KeywordRagService:
    """Token-matching search over an in-memory corpus (no embeddings).

    Scoring strategy:
    - Tokenize query on whitespace (lowercase)
    - Similarity = fraction of query tokens found in title + content
    - Filter out documents with similarity = 0
    - Sort by similarity descending, then by file path (for determinism)
    """

    def __init__(self, docs: Iterable[ReferenceDoc] = ()) -> None:
        self._docs = list(docs)

    @classmethod
    def from_directory(cls, directory: Path | str) -> "KeywordRagService":
        """Load every markdown file under a directory.

        Paths are stored relative to the directory; the first level-1 heading
        (or the file stem) becomes the title.
        """
        root = Path(directory)
        docs = []
        for path in sorted(root.rglob("*.md")):
            content = path.read_text(encoding="utf-8")
            match = _TITLE.search(content)
            relative = path.relative_to(root).as_posix()
            docs.append(
                ReferenceDoc(
                    id=relative,
                    file_path=relative,
                    title=match.group(1).strip() if match else path.stem,
                    content=content,
                )
            )
        logger.info(f"Loaded {len(docs)} reference docs from {root}")
        return cls(docs)

    def add(self, doc: ReferenceDoc) -> None:
        self._docs.append(doc)

    async def search_similar_docs(self, query: str, top_k: int) -> list[RagDocument]:
        """Search documents by token overlap with the query."""
        query_tokens = [token.strip() for token in query.lower().split() if token.strip()]
        if not query_tokens or top_k <= 0:
            return []

        scored: list[tuple[ReferenceDoc, float]] = []
        for doc in self._docs:
            haystack = f"{doc.title}\n{doc.content}".lower()
            match_count = sum(1 for token in query_tokens if token in haystack)
            if match_count > 0:
                scored.append((doc, match_count / len(query_tokens)))

        scored.sort(key=lambda x: (-x[1], x[0].file_path))

        return [
            RagDocument(
                id=doc.id,
                file_path=doc.file_path,
                title=doc.title,
                content=doc.content,
                similarity=round(score, 4),
            )
            for doc, score in scored[:top_k]
        ]
