"""Repository pattern for qualflow's record-store operations.

Single interface for: projects, documents, chunks, embeddings (row + vec
mirror), vector search, and analysis results. Job rows live in JobStore.
"""

from __future__ import annotations

import json
import sqlite3
import uuid

from qualflow.db.models import AnalysisResult, Chunk, Document, Embedding, Project, utc_now
from qualflow.db.vectors import ensure_vec_table, list_vec_tables, model_to_slug


class Repository:
    """Data access layer for projects, documents, chunks and their embeddings.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see qualflow.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def add_project(self, name: str, guide_context: str | None = None) -> Project:
        project = Project(id=str(uuid.uuid4()), name=name, guide_context=guide_context, created_at=utc_now())
        self._conn.execute(
            "INSERT INTO projects (id, name, guide_context, created_at) VALUES (?, ?, ?, ?)",
            (project.id, project.name, project.guide_context, project.created_at),
        )
        self._conn.commit()
        return project

    def get_project(self, project_id: str) -> Project | None:
        row = self._conn.execute(
            "SELECT id, name, guide_context, created_at FROM projects WHERE id = ?",
            (project_id,),
        ).fetchone()
        return _row_to_project(row) if row else None

    def set_guide(self, project_id: str, guide_context: str) -> None:
        self._conn.execute(
            "UPDATE projects SET guide_context = ? WHERE id = ?", (guide_context, project_id)
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(
        self,
        project_id: str,
        name: str,
        content: str | None = None,
        storage_path: str | None = None,
        respondent_name: str | None = None,
    ) -> Document:
        """Insert a document. Exactly one of *content* / *storage_path* is expected."""
        now = utc_now()
        doc = Document(
            id=str(uuid.uuid4()),
            project_id=project_id,
            name=name,
            content=content,
            storage_path=storage_path,
            respondent_name=respondent_name,
            created_at=now,
            updated_at=now,
        )
        self._conn.execute(
            """
            INSERT INTO documents
                (id, project_id, name, content, storage_path, respondent_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                doc.id,
                doc.project_id,
                doc.name,
                doc.content,
                doc.storage_path,
                doc.respondent_name,
                doc.created_at,
                doc.updated_at,
            ),
        )
        self._conn.commit()
        return doc

    def get_document(self, document_id: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self, project_id: str) -> list[Document]:
        """Return a project's documents, oldest first."""
        rows = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE project_id = ? ORDER BY created_at, rowid",
            (project_id,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def replace_document_content(self, document_id: str, content: str) -> Document | None:
        """Replace a document's content, bump its revision, and drop its chunks.

        Chunks of the previous revision are stale; they are deleted here rather
        than left for the next ingest run.
        """
        doc = self.get_document(document_id)
        if doc is None:
            return None
        self.delete_chunks_for_document(doc.project_id, doc.id)
        self._conn.execute(
            "UPDATE documents SET content = ?, storage_path = NULL, updated_at = ? WHERE id = ?",
            (content, utc_now(), document_id),
        )
        self._conn.commit()
        return self.get_document(document_id)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunks(self, chunks: list[Chunk]) -> list[int]:
        """Insert *chunks* in one transaction. Returns the new ids in input order.

        Sets ``chunk.id`` on each inserted chunk.
        """
        ids: list[int] = []
        with self._conn:
            for chunk in chunks:
                cur = self._conn.execute(
                    """
                    INSERT INTO chunks (
                        project_id, doc_id, chunk_index, text, start_offset, end_offset,
                        token_count, version_hash, speaker, participant_id, keywords, language
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.project_id,
                        chunk.doc_id,
                        chunk.chunk_index,
                        chunk.text,
                        chunk.start_offset,
                        chunk.end_offset,
                        chunk.token_count,
                        chunk.version_hash,
                        chunk.speaker,
                        chunk.participant_id,
                        json.dumps(chunk.keywords),
                        chunk.language,
                    ),
                )
                chunk.id = cur.lastrowid
                ids.append(cur.lastrowid)
        return ids

    def list_chunks(self, project_id: str, doc_id: str) -> list[Chunk]:
        """Return a document's chunks ordered by ``chunk_index``."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE project_id = ? AND doc_id = ? ORDER BY chunk_index",
            (project_id, doc_id),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?", (chunk_id,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def count_chunks(self, project_id: str, doc_id: str | None = None) -> int:
        if doc_id is None:
            return self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE project_id = ?", (project_id,)
            ).fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE project_id = ? AND doc_id = ?", (project_id, doc_id)
        ).fetchone()[0]

    def count_stale_chunks(self, project_id: str, doc_id: str, current_hash: str) -> int:
        """Chunks whose version_hash no longer matches the document revision."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE project_id = ? AND doc_id = ? AND version_hash != ?",
            (project_id, doc_id, current_hash),
        ).fetchone()[0]

    def delete_chunks_for_document(self, project_id: str, doc_id: str) -> int:
        """Delete a document's chunks and embeddings (row + vec mirror).

        Returns the number of chunks deleted.
        """
        return self._delete_chunks("project_id = ? AND doc_id = ?", (project_id, doc_id))

    def delete_chunks_for_project(self, project_id: str) -> int:
        """Delete every chunk and embedding of a project."""
        return self._delete_chunks("project_id = ?", (project_id,))

    def _delete_chunks(self, where: str, params: tuple) -> int:
        ids = [
            r[0]
            for r in self._conn.execute(f"SELECT id FROM chunks WHERE {where}", params).fetchall()
        ]
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        with self._conn:
            # vec0 tables do not cascade; embeddings rows do.
            for table in list_vec_tables(self._conn):
                self._conn.execute(
                    f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                    ids,
                )
            self._conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", ids)
        return len(ids)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def add_embeddings(self, embeddings: list[Embedding]) -> int:
        """Insert embedding rows and mirror them into the model's vec table.

        The chunk rows must already exist (foreign key). Returns the number of
        embeddings written.
        """
        if not embeddings:
            return 0
        tables: dict[str, str] = {}
        for emb in embeddings:
            if emb.model_id not in tables:
                tables[emb.model_id] = ensure_vec_table(
                    self._conn, model_to_slug(emb.model_id), emb.dimension
                )
        with self._conn:
            for emb in embeddings:
                table = tables[emb.model_id]
                self._conn.execute(
                    """
                    INSERT INTO embeddings (chunk_id, model_id, dimension, vector)
                    VALUES (?, ?, ?, ?)
                    """,
                    (emb.chunk_id, emb.model_id, emb.dimension, json.dumps(emb.vector)),
                )
                self._conn.execute(
                    f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
                    (emb.chunk_id, json.dumps(emb.vector)),
                )
        return len(embeddings)

    def get_embedding(self, chunk_id: int) -> Embedding | None:
        row = self._conn.execute(
            "SELECT chunk_id, model_id, vector FROM embeddings WHERE chunk_id = ?", (chunk_id,)
        ).fetchone()
        if row is None:
            return None
        return Embedding(chunk_id=row["chunk_id"], model_id=row["model_id"], vector=json.loads(row["vector"]))

    def count_embeddings(self, project_id: str, doc_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM embeddings e JOIN chunks c ON c.id = e.chunk_id WHERE c.project_id = ?"
        params: tuple = (project_id,)
        if doc_id is not None:
            sql += " AND c.doc_id = ?"
            params = (project_id, doc_id)
        return self._conn.execute(sql, params).fetchone()[0]

    def search_vec(
        self, project_id: str, model_id: str, embedding: list[float], limit: int = 10
    ) -> list[tuple[Chunk, float]]:
        """Nearest-neighbour search within one project. Returns (chunk, distance) best-first.

        vec0 has no project column, so the KNN over-fetches and filters.
        """
        table = f"vec_chunks_{model_to_slug(model_id)}"
        if table not in list_vec_tables(self._conn):
            return []
        vec_rows = self._conn.execute(
            f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? ORDER BY distance LIMIT ?",
            (json.dumps(embedding), limit * 10),
        ).fetchall()

        results: list[tuple[Chunk, float]] = []
        for vec_row in vec_rows:
            chunk = self.get_chunk(vec_row["rowid"])
            if chunk is not None and chunk.project_id == project_id:
                results.append((chunk, vec_row["distance"]))
                if len(results) >= limit:
                    break
        return results

    # ------------------------------------------------------------------
    # Analysis results
    # ------------------------------------------------------------------

    def upsert_analysis_result(self, result: AnalysisResult) -> None:
        """Insert or replace the result keyed by (project, question, respondent)."""
        self._conn.execute(
            """
            INSERT INTO analysis_results (
                project_id, question_id, respondent, document_id, question_text, section,
                quote, summary, theme, confidence, degraded, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, question_id, respondent) DO UPDATE SET
                document_id   = excluded.document_id,
                question_text = excluded.question_text,
                section       = excluded.section,
                quote         = excluded.quote,
                summary       = excluded.summary,
                theme         = excluded.theme,
                confidence    = excluded.confidence,
                degraded      = excluded.degraded,
                updated_at    = excluded.updated_at
            """,
            (
                result.project_id,
                result.question_id,
                result.respondent,
                result.document_id,
                result.question_text,
                result.section,
                result.quote,
                result.summary,
                result.theme,
                result.confidence,
                int(result.degraded),
                utc_now(),
            ),
        )
        self._conn.commit()

    def list_analysis_results(self, project_id: str) -> list[AnalysisResult]:
        rows = self._conn.execute(
            """
            SELECT project_id, question_id, respondent, document_id, question_text, section,
                   quote, summary, theme, confidence, degraded, updated_at
            FROM analysis_results WHERE project_id = ?
            ORDER BY respondent, question_id
            """,
            (project_id,),
        ).fetchall()
        return [
            AnalysisResult(
                project_id=r["project_id"],
                question_id=r["question_id"],
                respondent=r["respondent"],
                document_id=r["document_id"],
                question_text=r["question_text"],
                section=r["section"],
                quote=r["quote"],
                summary=r["summary"],
                theme=r["theme"],
                confidence=r["confidence"],
                degraded=bool(r["degraded"]),
                updated_at=r["updated_at"],
            )
            for r in rows
        ]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

_DOCUMENT_COLUMNS = (
    "id, project_id, name, content, storage_path, respondent_name, created_at, updated_at"
)

_CHUNK_COLUMNS = (
    "id, project_id, doc_id, chunk_index, text, start_offset, end_offset, token_count, "
    "version_hash, speaker, participant_id, keywords, language"
)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        guide_context=row["guide_context"],
        created_at=row["created_at"],
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        content=row["content"],
        storage_path=row["storage_path"],
        respondent_name=row["respondent_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        project_id=row["project_id"],
        doc_id=row["doc_id"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        token_count=row["token_count"],
        version_hash=row["version_hash"],
        speaker=row["speaker"],
        participant_id=row["participant_id"],
        keywords=json.loads(row["keywords"]),
        language=row["language"],
    )
