"""qualflow rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from qualflow.cli.errors import err_no_db
    err_console.print(err_no_db("qualflow.db"))
    raise typer.Exit(2)
"""

from __future__ import annotations


def err_no_api_key(provider: str, env_var: str | None = None) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_var = env_var or f"{provider.upper()}_API_KEY"
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = "qualflow.db") -> str:
    """No database found at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  qualflow init"
    )


def err_project_not_found(project_id: str) -> str:
    return (
        f"[red]Error:[/] Project not found: '{project_id}'.\n"
        "  Create one with:  qualflow project add <name>"
    )


def err_missing_project_id() -> str:
    return (
        "[red]Error:[/] A project id is required.\n"
        "  Usage:  qualflow enqueue <project-id>"
    )


def err_file_not_found(path: str) -> str:
    return (
        f"[red]Error:[/] File not found: '{path}'\n"
        "  Check the path and try again."
    )


def err_config(message: str) -> str:
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}"
    )


def err_job_failed(kind: str, message: str, project_hint: str = "<project-id>") -> str:
    """A worker invocation failed its job; the job row holds the error."""
    return (
        f"[red]Error:[/] {kind} job failed: {message}\n"
        f"  Inspect:  qualflow status {project_hint}\n"
        f"  Retry:    qualflow requeue {project_hint} --kind {kind}"
    )


def warn_failed_jobs(count: int) -> str:
    return (
        f"[yellow]⚠[/] {count} job(s) failed during drain.\n"
        "  Run:  qualflow status <project-id>  to see the first error,\n"
        "        qualflow requeue <project-id>  to retry failed jobs."
    )
