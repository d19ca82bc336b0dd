"""Durable retrieval store: documents, chunks, vectors, graph, attempts and snapshots."""

from __future__ import annotations

import sqlite3
import threading
from array import array
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path, PurePath
from typing import Any, Iterable, Iterator, Sequence

import orjson

from retrievald.core.errors import StoreError
from retrievald.core.logging import get_logger
from retrievald.db.sqlite import SQLiteDatabase, iter_batches, placeholders
from retrievald.models.dto import IndexedSourceStats, IndexStats, ProgressState
from retrievald.models.entities import (
    AttemptOutcome,
    BackfillCheckpoint,
    ChunkVector,
    GraphEdge,
    IngestionEvent,
    LexicalHit,
    Partition,
    RetrievalChunk,
    RetrievalDocument,
    RiskLabel,
    SourceType,
)
from retrievald.utils.text import tokenize
from retrievald.utils.time import from_epoch, to_epoch, utc_now

logger = get_logger(__name__)

QUEUE_SNAPSHOT_CAPACITY = 128
QUEUE_SNAPSHOT_RETENTION = 1
VACUUM_THRESHOLD_BYTES = 256 * 1024 * 1024
AUDIT_RETENTION_SECONDS = 30 * 24 * 3600
AUDIT_MAX_ROWS = 50_000
_UPDATED_AT_TOLERANCE = 1e-3
MENTION_EDGE_TYPE = "mentions"


class RetrievalStore:
    """Single-writer store over one SQLite connection.

    Every public method holds the store lock for its whole duration, so reads
    never observe a half-applied upsert.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path.expanduser()
        self.db = SQLiteDatabase(self.db_path)
        self._lock = threading.RLock()

    # Lifecycle ---------------------------------------------------------

    def open_and_migrate(self) -> None:
        with self._locked("open_and_migrate"):
            self.db.connect()
            if "documents" in self.db.table_names() and "searchable" not in self.db.column_names("documents"):
                self.db.execute("ALTER TABLE documents ADD COLUMN searchable INTEGER NOT NULL DEFAULT 1")
                self.db.commit()
            self.db.ensure_schema()
            self.db.commit()
        logger.info("Store ready", extra={"ctx_db_path": str(self.db_path)})

    def close(self) -> None:
        with self._lock:
            self.db.close()

    # Documents ---------------------------------------------------------

    def upsert_document(
        self,
        document: RetrievalDocument,
        chunks: Sequence[RetrievalChunk],
        attempt_outcome: AttemptOutcome | None = None,
    ) -> None:
        """Replace the document row, its whole chunk set and its mention edges atomically."""
        with self._locked("upsert_document"), self.db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO documents (
                  id, source_type, source_id, title, body, source_path_or_handle,
                  updated_at, risk, partition, searchable
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_type, source_id) DO UPDATE SET
                  title = excluded.title,
                  body = excluded.body,
                  source_path_or_handle = excluded.source_path_or_handle,
                  updated_at = excluded.updated_at,
                  risk = excluded.risk,
                  partition = excluded.partition,
                  searchable = excluded.searchable
                """,
                [
                    document.id,
                    document.source_type.value,
                    document.source_id,
                    document.title,
                    document.body,
                    document.source_path_or_handle,
                    to_epoch(document.updated_at),
                    document.risk.value,
                    document.partition.value,
                    1 if document.searchable else 0,
                ],
            )
            _delete_chunk_rows(cur, [document.id])
            # Mention edges are derived from the body and get rebuilt by the caller.
            cur.execute(
                "DELETE FROM graph_edges WHERE source_node = ? AND edge_type = ?",
                [document.id, MENTION_EDGE_TYPE],
            )
            for chunk in chunks:
                cur.execute(
                    "INSERT INTO chunks (id, document_id, chunk_index, text) VALUES (?, ?, ?, ?)",
                    [chunk.id, document.id, chunk.index, chunk.text],
                )
                if not document.searchable:
                    continue
                cur.execute(
                    "INSERT INTO chunks_fts (rowid, title, body) VALUES (?, ?, ?)",
                    [cur.lastrowid, document.title, chunk.text],
                )
                if chunk.embedding:
                    cur.execute(
                        "INSERT INTO chunk_vectors (chunk_id, document_id, dim, vector) VALUES (?, ?, ?, ?)",
                        [chunk.id, document.id, len(chunk.embedding), vector_to_bytes(chunk.embedding)],
                    )
            if attempt_outcome is not None:
                _upsert_attempt(
                    cur,
                    document.source_type,
                    document.source_id,
                    document.source_path_or_handle,
                    document.updated_at,
                    attempt_outcome,
                )

    def fetch_document(self, document_id: str) -> RetrievalDocument | None:
        with self._locked("fetch_document"):
            row = self.db.execute("SELECT * FROM documents WHERE id = ?", [document_id]).fetchone()
        return _row_to_document(row) if row else None

    def document_count(self) -> int:
        with self._locked("document_count"):
            return int(self.db.scalar("SELECT COUNT(*) FROM documents") or 0)

    def delete_documents_for_path(self, source_type: SourceType, path_prefix: str) -> int:
        """Remove documents at or below ``path_prefix`` along with their edges and attempts."""
        exact, directory = _prefix_match(path_prefix)
        with self._locked("delete_documents_for_path"), self.db.transaction() as cur:
            rows = cur.execute(
                """
                SELECT id FROM documents
                WHERE source_type = ?
                  AND (source_path_or_handle = ? OR substr(source_path_or_handle, 1, length(?)) = ?)
                """,
                [source_type.value, exact, directory, directory],
            ).fetchall()
            document_ids = [row["id"] for row in rows]
            _delete_documents(cur, document_ids)
            cur.execute(
                """
                DELETE FROM ingestion_attempts
                WHERE source_type = ?
                  AND (source_path_or_handle = ? OR substr(source_path_or_handle, 1, length(?)) = ?)
                """,
                [source_type.value, exact, directory, directory],
            )
        if document_ids:
            logger.info("Deleted %s documents under %s", len(document_ids), path_prefix)
        return len(document_ids)

    def purge_file_documents_for_extensions(self, extensions: Iterable[str]) -> int:
        """Drop file documents by extension and forget their ingestion attempts."""
        wanted = {ext.lower().lstrip(".") for ext in extensions if ext.strip(" .")}
        if not wanted:
            return 0
        with self._locked("purge_file_documents_for_extensions"), self.db.transaction() as cur:
            rows = cur.execute(
                "SELECT id, source_path_or_handle FROM documents WHERE source_type = ?",
                [SourceType.FILE.value],
            ).fetchall()
            document_ids = [row["id"] for row in rows if _extension(row["source_path_or_handle"]) in wanted]
            _delete_documents(cur, document_ids)
            attempt_rows = cur.execute(
                "SELECT source_id, source_path_or_handle FROM ingestion_attempts WHERE source_type = ?",
                [SourceType.FILE.value],
            ).fetchall()
            stale = [row["source_id"] for row in attempt_rows if _extension(row["source_path_or_handle"]) in wanted]
            for batch in iter_batches(stale):
                cur.execute(
                    f"DELETE FROM ingestion_attempts WHERE source_type = ? AND source_id IN ({placeholders(len(batch))})",
                    [SourceType.FILE.value, *batch],
                )
        logger.info(
            "Purged %s documents for extensions %s",
            len(document_ids),
            sorted(wanted),
            extra={"ctx_invalidated_attempts": len(stale)},
        )
        return len(document_ids)

    def refresh_file_searchability(self, non_searchable_extensions: Iterable[str]) -> int:
        """Recompute the searchable flag and drop index rows of hidden documents."""
        extensions = sorted({ext.lower().lstrip(".") for ext in non_searchable_extensions if ext})
        with self._locked("refresh_file_searchability"), self.db.transaction() as cur:
            cur.execute("UPDATE documents SET searchable = 1 WHERE source_type = ?", [SourceType.FILE.value])
            for ext in extensions:
                cur.execute(
                    "UPDATE documents SET searchable = 0 WHERE source_type = ? AND lower(source_path_or_handle) LIKE ?",
                    [SourceType.FILE.value, f"%.{ext}"],
                )
            hidden = [row["id"] for row in cur.execute("SELECT id FROM documents WHERE searchable = 0").fetchall()]
            for batch in iter_batches(hidden):
                marks = placeholders(len(batch))
                cur.execute(
                    f"DELETE FROM chunks_fts WHERE rowid IN (SELECT seq FROM chunks WHERE document_id IN ({marks}))",
                    list(batch),
                )
                cur.execute(f"DELETE FROM chunk_vectors WHERE document_id IN ({marks})", list(batch))
                cur.execute(
                    f"DELETE FROM graph_edges WHERE source_node IN ({marks}) OR target_node IN ({marks})",
                    [*batch, *batch],
                )
        return len(hidden)

    def file_source_paths(self) -> set[str]:
        """Every file path with a document or an attempt on record."""
        with self._locked("file_source_paths"):
            rows = self.db.query(
                """
                SELECT source_path_or_handle FROM documents WHERE source_type = ?
                UNION
                SELECT source_path_or_handle FROM ingestion_attempts WHERE source_type = ?
                """,
                [SourceType.FILE.value, SourceType.FILE.value],
            )
        return {row["source_path_or_handle"] for row in rows}

    # Ingestion attempts ------------------------------------------------

    def record_ingestion_attempt(
        self,
        source_type: SourceType,
        source_id: str,
        source_path_or_handle: str,
        updated_at: datetime,
        outcome: AttemptOutcome,
    ) -> None:
        with self._locked("record_ingestion_attempt"), self.db.transaction() as cur:
            _upsert_attempt(cur, source_type, source_id, source_path_or_handle, updated_at, outcome)

    def is_ingestion_attempt_current(self, source_type: SourceType, source_id: str, updated_at: datetime) -> bool:
        with self._locked("is_ingestion_attempt_current"):
            row = self.db.execute(
                "SELECT updated_at, outcome FROM ingestion_attempts WHERE source_type = ? AND source_id = ?",
                [source_type.value, source_id],
            ).fetchone()
        if row is None:
            return False
        if not AttemptOutcome(row["outcome"]).is_cacheable:
            return False
        return float(row["updated_at"]) + _UPDATED_AT_TOLERANCE >= to_epoch(updated_at)

    # Search ------------------------------------------------------------

    def lexical_search(
        self,
        query_text: str,
        source_filters: Sequence[SourceType] | None,
        partition_filter: Sequence[Partition] | None,
        limit: int,
    ) -> list[LexicalHit]:
        """Full-text match over title and body, best chunk per document, bm25 order."""
        match = build_match_query(query_text)
        if not match or limit <= 0:
            return []
        sql = [
            """
            SELECT d.id AS document_id, c.id AS chunk_id, d.source_type, d.source_id, d.title,
                   c.text AS snippet, d.source_path_or_handle, d.updated_at, d.risk,
                   bm25(chunks_fts) AS score
            FROM chunks_fts
            JOIN chunks c ON c.seq = chunks_fts.rowid
            JOIN documents d ON d.id = c.document_id
            WHERE chunks_fts MATCH ? AND d.searchable = 1
            """
        ]
        params: list[Any] = [match]
        _append_filters(sql, params, source_filters, partition_filter)
        sql.append("ORDER BY score LIMIT ?")
        params.append(limit * 4)
        with self._locked("lexical_search"):
            rows = self.db.query("\n".join(sql), params)
        hits: list[LexicalHit] = []
        seen: set[str] = set()
        for row in rows:
            if row["document_id"] in seen:
                continue
            seen.add(row["document_id"])
            hits.append(
                LexicalHit(
                    document_id=row["document_id"],
                    chunk_id=row["chunk_id"],
                    source_type=SourceType(row["source_type"]),
                    source_id=row["source_id"],
                    title=row["title"],
                    snippet=row["snippet"],
                    source_path_or_handle=row["source_path_or_handle"],
                    updated_at=from_epoch(row["updated_at"]),
                    risk=RiskLabel(row["risk"]),
                    rank=len(hits),
                )
            )
            if len(hits) >= limit:
                break
        return hits

    def chunk_vectors(
        self,
        source_filters: Sequence[SourceType] | None,
        partition_filter: Sequence[Partition] | None,
    ) -> list[ChunkVector]:
        sql = [
            """
            SELECT cv.chunk_id, cv.document_id, cv.vector, c.text, d.source_type, d.source_id, d.title,
                   d.source_path_or_handle, d.updated_at, d.risk
            FROM chunk_vectors cv
            JOIN chunks c ON c.id = cv.chunk_id
            JOIN documents d ON d.id = cv.document_id
            WHERE d.searchable = 1
            """
        ]
        params: list[Any] = []
        _append_filters(sql, params, source_filters, partition_filter)
        sql.append("ORDER BY d.updated_at DESC")
        with self._locked("chunk_vectors"):
            rows = self.db.query("\n".join(sql), params)
        return [
            ChunkVector(
                chunk_id=row["chunk_id"],
                document_id=row["document_id"],
                source_type=SourceType(row["source_type"]),
                source_id=row["source_id"],
                title=row["title"],
                text=row["text"],
                source_path_or_handle=row["source_path_or_handle"],
                updated_at=from_epoch(row["updated_at"]),
                risk=RiskLabel(row["risk"]),
                vector=row["vector"],
            )
            for row in rows
        ]

    # Graph -------------------------------------------------------------

    def insert_graph_edges(self, edges: Sequence[GraphEdge]) -> None:
        if not edges:
            return
        with self._locked("insert_graph_edges"), self.db.transaction() as cur:
            cur.executemany(
                """
                INSERT INTO graph_edges (
                  id, source_node, target_node, edge_type, confidence, weight, source_type, event_time, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  confidence = excluded.confidence,
                  weight = excluded.weight,
                  event_time = excluded.event_time,
                  updated_at = excluded.updated_at
                """,
                [
                    (
                        edge.id,
                        edge.source_node,
                        edge.target_node,
                        edge.edge_type,
                        edge.confidence,
                        edge.weight,
                        edge.source_type.value,
                        to_epoch(edge.event_time),
                        to_epoch(edge.updated_at),
                    )
                    for edge in edges
                ],
            )

    def graph_neighbors(self, node_ids: Sequence[str], limit: int) -> list[GraphEdge]:
        if not node_ids or limit <= 0:
            return []
        marks = placeholders(len(node_ids))
        with self._locked("graph_neighbors"):
            rows = self.db.query(
                f"""
                SELECT * FROM graph_edges
                WHERE source_node IN ({marks}) OR target_node IN ({marks})
                ORDER BY confidence DESC, updated_at DESC
                LIMIT ?
                """,
                [*node_ids, *node_ids, limit],
            )
        return [
            GraphEdge(
                id=row["id"],
                source_node=row["source_node"],
                target_node=row["target_node"],
                edge_type=row["edge_type"],
                confidence=float(row["confidence"]),
                weight=float(row["weight"]),
                source_type=SourceType(row["source_type"]),
                event_time=from_epoch(row["event_time"]),
                updated_at=from_epoch(row["updated_at"]),
            )
            for row in rows
        ]

    # Checkpoints and jobs ----------------------------------------------

    def save_checkpoint(self, checkpoint: BackfillCheckpoint) -> None:
        with self._locked("save_checkpoint"), self.db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO backfill_checkpoints (key, payload, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                [
                    checkpoint.key,
                    orjson.dumps(checkpoint.to_payload()).decode("utf-8"),
                    to_epoch(checkpoint.updated_at),
                ],
            )

    def load_checkpoint(self, key: str) -> BackfillCheckpoint | None:
        with self._locked("load_checkpoint"):
            row = self.db.execute("SELECT payload FROM backfill_checkpoints WHERE key = ?", [key]).fetchone()
        return BackfillCheckpoint.from_payload(orjson.loads(row["payload"])) if row else None

    def all_checkpoints(self) -> list[BackfillCheckpoint]:
        with self._locked("all_checkpoints"):
            rows = self.db.query("SELECT payload FROM backfill_checkpoints ORDER BY key")
        return [BackfillCheckpoint.from_payload(orjson.loads(row["payload"])) for row in rows]

    def upsert_backfill_job(self, checkpoint: BackfillCheckpoint) -> None:
        now = to_epoch(utc_now())
        with self._locked("upsert_backfill_job"), self.db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO backfill_jobs (
                  key, source_type, status, items_processed, items_skipped, estimated_total, started_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  status = excluded.status,
                  items_processed = excluded.items_processed,
                  items_skipped = excluded.items_skipped,
                  estimated_total = excluded.estimated_total,
                  started_at = CASE WHEN backfill_jobs.status = 'idle' THEN excluded.started_at
                                    ELSE backfill_jobs.started_at END,
                  updated_at = excluded.updated_at
                """,
                [
                    checkpoint.key,
                    checkpoint.source_type.value,
                    checkpoint.status,
                    checkpoint.items_processed,
                    checkpoint.items_skipped,
                    checkpoint.estimated_total,
                    now,
                    now,
                ],
            )

    def list_backfill_jobs(self) -> list[dict[str, Any]]:
        with self._locked("list_backfill_jobs"):
            rows = self.db.query("SELECT * FROM backfill_jobs ORDER BY key")
        return [dict(row) for row in rows]

    # Queue snapshots ---------------------------------------------------

    def save_queue_snapshot(self, items: Sequence[IngestionEvent]) -> None:
        kept = list(items)[-QUEUE_SNAPSHOT_CAPACITY:]
        payload = orjson.dumps([item.to_payload() for item in kept])
        with self._locked("save_queue_snapshot"), self.db.transaction() as cur:
            cur.execute(
                "INSERT INTO queue_snapshots (payload, item_count, created_at) VALUES (?, ?, ?)",
                [payload, len(kept), to_epoch(utc_now())],
            )
            cur.execute(
                """
                DELETE FROM queue_snapshots
                WHERE id NOT IN (SELECT id FROM queue_snapshots ORDER BY id DESC LIMIT ?)
                """,
                [QUEUE_SNAPSHOT_RETENTION],
            )

    def load_latest_queue_snapshot(self) -> list[IngestionEvent]:
        with self._locked("load_latest_queue_snapshot"):
            row = self.db.execute("SELECT payload FROM queue_snapshots ORDER BY id DESC LIMIT 1").fetchone()
        if row is None:
            return []
        items = orjson.loads(row["payload"])
        return [IngestionEvent.from_payload(item) for item in items[-QUEUE_SNAPSHOT_CAPACITY:]]

    def reclaim_queue_snapshot_storage_if_needed(self) -> bool:
        """Clear historical snapshot rows and give the space back to the filesystem."""
        with self._locked("reclaim_queue_snapshot_storage_if_needed"):
            stored = int(self.db.scalar("SELECT COALESCE(SUM(LENGTH(payload)), 0) FROM queue_snapshots") or 0)
            if stored <= 0:
                return False
            self.db.execute("DELETE FROM queue_snapshots")
            self.db.reclaim_space(VACUUM_THRESHOLD_BYTES)
        logger.info("Reclaimed queue snapshot storage", extra={"ctx_bytes": stored})
        return True

    # Stats and maintenance ---------------------------------------------

    def index_stats(self) -> IndexStats:
        with self._locked("index_stats"):
            rows = self.db.query(
                "SELECT source_type, COUNT(*) AS count, MAX(updated_at) AS last_updated FROM documents GROUP BY source_type"
            )
        by_source = {row["source_type"]: row for row in rows}
        sources = []
        for source_type in SourceType:
            row = by_source.get(source_type.value)
            sources.append(
                IndexedSourceStats(
                    source_type=source_type,
                    document_count=int(row["count"]) if row else 0,
                    last_document_updated_at=from_epoch(row["last_updated"]) if row else None,
                )
            )
        return IndexStats(total_document_count=sum(item.document_count for item in sources), sources=sources)

    def all_progress_states(self) -> list[ProgressState]:
        checkpoints = self.all_checkpoints()
        jobs = {job["key"]: job for job in self.list_backfill_jobs()}
        now = to_epoch(utc_now())
        states = []
        for checkpoint in checkpoints:
            if checkpoint.status == "idle" and checkpoint.items_processed > 0:
                percent = 1.0
            elif checkpoint.estimated_total > 0:
                percent = min(1.0, max(0.0, checkpoint.items_processed / checkpoint.estimated_total))
            else:
                percent = 0.0
            eta = None
            job = jobs.get(checkpoint.key)
            if checkpoint.status != "idle" and job and checkpoint.items_processed > 0:
                elapsed = max(1e-3, now - float(job["started_at"]))
                rate = checkpoint.items_processed / elapsed
                remaining = max(0, checkpoint.estimated_total - checkpoint.items_processed)
                eta = int(remaining / rate) if rate > 0 else None
            states.append(
                ProgressState(
                    source_type=checkpoint.source_type,
                    scope_label=checkpoint.scope_label,
                    status=checkpoint.status,
                    items_processed=checkpoint.items_processed,
                    items_skipped=checkpoint.items_skipped,
                    estimated_total=checkpoint.estimated_total,
                    percent_complete=percent,
                    eta_seconds=eta,
                    checkpoint_updated_at=checkpoint.updated_at,
                )
            )
        return states

    def record_audit_event(self, kind: str, payload: dict[str, Any]) -> None:
        with self._locked("record_audit_event"), self.db.transaction() as cur:
            cur.execute(
                "INSERT INTO audit_events (kind, payload, created_at) VALUES (?, ?, ?)",
                [kind, orjson.dumps(payload, default=str).decode("utf-8"), to_epoch(utc_now())],
            )

    def compact(self) -> None:
        cutoff = to_epoch(utc_now()) - AUDIT_RETENTION_SECONDS
        with self._locked("compact"):
            with self.db.transaction() as cur:
                cur.execute("DELETE FROM audit_events WHERE created_at < ?", [cutoff])
                cur.execute(
                    "DELETE FROM audit_events WHERE id NOT IN (SELECT id FROM audit_events ORDER BY id DESC LIMIT ?)",
                    [AUDIT_MAX_ROWS],
                )
                cur.execute("INSERT INTO chunks_fts (chunks_fts) VALUES ('optimize')")
            self.db.execute("PRAGMA optimize")
        logger.info("Store compaction finished")

    # Internal helpers -------------------------------------------------

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except sqlite3.Error as exc:
                logger.exception("Store operation %s failed", operation)
                raise StoreError(f"{operation} failed: {exc}") from exc


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def build_match_query(query_text: str) -> str:
    """OR-join quoted tokens so any overlapping term matches."""
    tokens: list[str] = []
    for token in tokenize(query_text):
        if token not in tokens:
            tokens.append(token)
    return " OR ".join(f'"{token}"' for token in tokens[:32])


def _upsert_attempt(
    cur: sqlite3.Cursor,
    source_type: SourceType,
    source_id: str,
    source_path_or_handle: str,
    updated_at: datetime,
    outcome: AttemptOutcome,
) -> None:
    cur.execute(
        """
        INSERT INTO ingestion_attempts (source_type, source_id, source_path_or_handle, updated_at, outcome, recorded_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(source_type, source_id) DO UPDATE SET
          source_path_or_handle = excluded.source_path_or_handle,
          updated_at = excluded.updated_at,
          outcome = excluded.outcome,
          recorded_at = excluded.recorded_at
        """,
        [
            source_type.value,
            source_id,
            source_path_or_handle,
            to_epoch(updated_at),
            outcome.value,
            to_epoch(utc_now()),
        ],
    )


def _delete_chunk_rows(cur: sqlite3.Cursor, document_ids: Sequence[str]) -> None:
    for batch in iter_batches(list(document_ids)):
        marks = placeholders(len(batch))
        cur.execute(
            f"DELETE FROM chunks_fts WHERE rowid IN (SELECT seq FROM chunks WHERE document_id IN ({marks}))",
            list(batch),
        )
        cur.execute(f"DELETE FROM chunk_vectors WHERE document_id IN ({marks})", list(batch))
        cur.execute(f"DELETE FROM chunks WHERE document_id IN ({marks})", list(batch))


def _delete_documents(cur: sqlite3.Cursor, document_ids: Sequence[str]) -> None:
    _delete_chunk_rows(cur, document_ids)
    for batch in iter_batches(list(document_ids)):
        marks = placeholders(len(batch))
        cur.execute(
            f"DELETE FROM graph_edges WHERE source_node IN ({marks}) OR target_node IN ({marks})",
            [*batch, *batch],
        )
        cur.execute(f"DELETE FROM documents WHERE id IN ({marks})", list(batch))


def _append_filters(
    sql: list[str],
    params: list[Any],
    source_filters: Sequence[SourceType] | None,
    partition_filter: Sequence[Partition] | None,
) -> None:
    if source_filters:
        sql.append(f"AND d.source_type IN ({placeholders(len(source_filters))})")
        params.extend(SourceType(item).value for item in source_filters)
    if partition_filter:
        sql.append(f"AND d.partition IN ({placeholders(len(partition_filter))})")
        params.extend(Partition(item).value for item in partition_filter)


def _prefix_match(path_prefix: str) -> tuple[str, str]:
    exact = path_prefix.rstrip("/") or "/"
    return exact, exact.rstrip("/") + "/"


def _extension(path: str) -> str:
    return PurePath(path).suffix.lower().lstrip(".")


def _row_to_document(row: sqlite3.Row) -> RetrievalDocument:
    return RetrievalDocument(
        id=row["id"],
        source_type=SourceType(row["source_type"]),
        source_id=row["source_id"],
        title=row["title"],
        body=row["body"],
        source_path_or_handle=row["source_path_or_handle"],
        updated_at=from_epoch(row["updated_at"]),
        risk=RiskLabel(row["risk"]),
        partition=Partition(row["partition"]),
        searchable=bool(row["searchable"]),
    )


__all__ = [
    "RetrievalStore",
    "QUEUE_SNAPSHOT_CAPACITY",
    "MENTION_EDGE_TYPE",
    "build_match_query",
    "vector_to_bytes",
]
