# Joins extracted documents into the single context string sent to the model.

from typing import Iterable, List

from .extractor import DocumentRecord


def boundary(filename: str) -> str:
    return f"=== Document: {filename} ==="


def has_content(records: Iterable[DocumentRecord]) -> bool:
    return any(r.has_content for r in records)


def combine(records: Iterable[DocumentRecord]) -> str:
    """
    Emit one block per successful record, in input order:

        \\n=== Document: <filename> ===\\n<text>\\n

    Blocks are joined with a newline. Returns "" when nothing qualifies;
    callers must check has_content() before generating from it.
    """
    blocks: List[str] = [
        f"\n{boundary(r.filename)}\n{r.text}\n"
        for r in records
        if r.has_content
    ]
    return "\n".join(blocks)
