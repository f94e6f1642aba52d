"""qualflow database layer."""

from qualflow.db.connection import Database
from qualflow.db.jobs import JobStore
from qualflow.db.migrations import MIGRATIONS, run_migrations
from qualflow.db.repository import Repository
from qualflow.db.schema import initialize
from qualflow.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "JobStore",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
