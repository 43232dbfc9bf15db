from __future__ import annotations

import re
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from archive_index_pipeline.models import ArchiveFile

logger = structlog.get_logger(__name__)

OPERATORS = frozenset({"AND", "OR", "NOT"})
MIN_TRIGRAM_LENGTH = 3

_TOKEN_RE = re.compile(r'"[^"]*"?|[^\s"]+')


@dataclass
class _Token:
    text: str
    phrase: bool = False
    operator: bool = False
    negated: bool = False
    wildcard: bool = False

    @property
    def mergeable(self) -> bool:
        return not (self.phrase or self.operator or self.negated)


def _tokenize(query: str) -> list[_Token]:
    tokens: list[_Token] = []
    for raw in _TOKEN_RE.findall(query):
        if raw.startswith('"'):
            inner = raw[1:-1] if len(raw) > 1 and raw.endswith('"') else raw[1:]
            if inner.strip():
                tokens.append(_Token(text=inner, phrase=True))
            continue
        if raw in OPERATORS:
            tokens.append(_Token(text=raw, operator=True))
            continue
        negated = raw.startswith("-") and len(raw) > 1
        word = raw[1:] if negated else raw
        wildcard = word.endswith("*") and len(word) > 1
        word = word.rstrip("*") if wildcard else word
        if word and word != "*":
            tokens.append(_Token(text=word, negated=negated, wildcard=wildcard))
    return tokens


def _merge_short_tokens(tokens: list[_Token]) -> list[_Token]:
    """Short bare words cannot match a trigram index alone; join them to the next word."""
    merged: list[_Token] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        while (
            tok.mergeable
            and not tok.wildcard
            and len(tok.text) < MIN_TRIGRAM_LENGTH
            and i + 1 < len(tokens)
            and tokens[i + 1].mergeable
        ):
            nxt = tokens[i + 1]
            tok = _Token(text=f"{tok.text} {nxt.text}", wildcard=nxt.wildcard)
            i += 1
        merged.append(tok)
        i += 1
    return merged


def _quote(text: str) -> str:
    return '"' + text.replace('"', '""') + '"'


def sanitize_query(query: str | None) -> str:
    """
    Turns free text into an FTS5 match expression for a trigram table:
    every word quoted, `-word` as NOT, `word*` as a quoted prefix, and
    operators only kept between two terms.
    """
    tokens = _merge_short_tokens(_tokenize(query or ""))

    parts: list[str] = []
    pending_operator: str | None = None
    for tok in tokens:
        if tok.operator:
            # Leading or doubled operators are dropped.
            if parts and pending_operator is None:
                pending_operator = tok.text
            continue

        term = _quote(tok.text) + ("*" if tok.wildcard else "")

        if tok.negated and parts:
            parts.append("NOT")
        elif tok.negated:
            # Nothing to subtract from; keep the word as typed.
            term = _quote("-" + tok.text) + ("*" if tok.wildcard else "")
        elif pending_operator is not None:
            parts.append(pending_operator)
        pending_operator = None
        parts.append(term)

    while parts and parts[-1] in OPERATORS:
        parts.pop()
    return " ".join(parts)


class TrigramIndex:
    """
    Local SQLite FTS5 index with the trigram tokenizer, the legacy full-text
    backend for archive files.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def ensure_table(self) -> None:
        self._conn.execute(
            """
            create virtual table if not exists archive_file_trigrams using fts5(
              archive_file_id unindexed,
              archive_node_id unindexed,
              fonds_id unindexed,
              fonds_name unindexed,
              decade unindexed,
              title, summary, call_number, parents, origin_names,
              tokenize = 'trigram'
            )
            """
        )

    def rebuild(self, files: Iterable[ArchiveFile]) -> int:
        self.ensure_table()
        self._conn.execute("delete from archive_file_trigrams")
        rows = []
        for f in files:
            doc = f.to_document()
            rows.append(
                (
                    doc["id"],
                    doc["archive_node_id"],
                    doc["fonds_id"],
                    doc["fonds_name"],
                    doc["decade"],
                    doc["title"] or "",
                    doc["summary"] or "",
                    doc["call_number"] or "",
                    doc["parent_names"],
                    " ".join(doc["origin_names"]),
                )
            )
        self._conn.executemany(
            """
            insert into archive_file_trigrams(
              archive_file_id, archive_node_id, fonds_id, fonds_name, decade,
              title, summary, call_number, parents, origin_names
            ) values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        self._conn.commit()
        logger.info("trigram.rebuilt", files=len(rows))
        return len(rows)

    def search(self, query: str | None, *, node_ids: Iterable[str] | None = None, limit: int = 100) -> list[str]:
        expression = sanitize_query(query)
        if not expression:
            return []

        sql = "select archive_file_id from archive_file_trigrams where archive_file_trigrams match ?"
        params: list[object] = [expression]
        if node_ids is not None:
            ids = list(node_ids)
            if not ids:
                return []
            sql += f" and archive_node_id in ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        sql += " order by call_number limit ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [r[0] for r in rows]
