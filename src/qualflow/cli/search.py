"""qualflow search: nearest chunks of a project for a free-text query."""

from __future__ import annotations

from typing import Annotated

import typer

from qualflow.cli.common import DbOption, emit, exit_with, load_cli_config, open_db, require_api_key, resolve_db
from qualflow.db.repository import Repository
from qualflow.errors import ProjectNotFoundError
from qualflow.ingest.embedding_batcher import EmbeddingBatcher
from qualflow.ingest.rate_limiter import TokenBucket
from qualflow.retriever import search


def search_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    query: Annotated[str, typer.Argument(help="Free-text query.")],
    top_k: Annotated[int, typer.Option("--top-k", "-k", min=1, help="Number of chunks to return.")] = 5,
    db: DbOption = None,
) -> None:
    """Search a project's embedded chunks."""
    cfg = load_cli_config()
    require_api_key(cfg.embedding.model)
    conn = open_db(resolve_db(db, cfg))
    try:
        repo = Repository(conn)
        if repo.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)
        batcher = EmbeddingBatcher(
            TokenBucket(cfg.rate_limit.capacity, cfg.rate_limit.refill_per_second),
            cfg.embedding.model,
            acquire_timeout=cfg.rate_limit.acquire_timeout,
        )
        hits = search(repo, batcher, project_id, query, top_k=top_k)
    except Exception as exc:
        exit_with(exc)
    finally:
        conn.close()
    emit({"success": True, "results": [hit.to_dict() for hit in hits]})
