"""Defines the Command Line Interface (CLI) using Typer."""

import asyncio
from pathlib import Path
from typing import Any, Coroutine, TypeVar

import typer
from dotenv import load_dotenv
from githubkit.exception import GitHubException
from typer import Argument, Option
from typing_extensions import Annotated

from fork_sync_manager.cascade.exceptions import CascadeInvariantError, CascadeStartError
from fork_sync_manager.configuration.env import get_settings
from fork_sync_manager.configuration.exceptions import (
    GitHubAuthenticationConfigurationUndefinedError,
    InvalidConfigurationValueError,
    RequiredConfigurationElementError,
)
from fork_sync_manager.configuration.models import OrchestratorConfig
from fork_sync_manager.configuration.reconcile import reconcile_orchestrator_configuration, validate_github_authentication_configuration
from fork_sync_manager.driver import run_cascade_workflow, run_health_workflow, run_monitor_workflow, run_sync_workflow
from fork_sync_manager.lifecycle.exceptions import LifecycleIntegrityError, LifecycleTransitionError
from fork_sync_manager.state.exceptions import SyncStateCorruptError
from fork_sync_manager.utils.logging import configure_logging
from fork_sync_manager.vcs.exceptions import GitError

load_dotenv()

T = TypeVar("T")

EXIT_SUCCESS = 0
EXIT_HUMAN_REQUIRED = 1
EXIT_INTEGRITY_ERROR = 2

# Corrupted state or labels; reported loudly and never repaired automatically.
INTEGRITY_ERRORS = (LifecycleIntegrityError, LifecycleTransitionError, CascadeInvariantError, SyncStateCorruptError)

# Failures that survived their retries or prevented a run from starting.
OPERATIONAL_ERRORS = (CascadeStartError, GitError, GitHubException)

typer_app = typer.Typer(pretty_exceptions_show_locals=False)
repo_app = typer.Typer(help="Commands that operate on one fork repository")


def run_workflow(workflow: Coroutine[Any, Any, T]) -> T:
    """Run a workflow coroutine, mapping failures onto the CLI exit codes."""
    try:
        return asyncio.run(workflow)
    except INTEGRITY_ERRORS as exc:
        typer.echo(f"Integrity error, no automatic repair attempted: {exc}", err=True)
        raise typer.Exit(EXIT_INTEGRITY_ERROR) from exc
    except OPERATIONAL_ERRORS as exc:
        typer.echo(f"Operation failed: {exc}", err=True)
        raise typer.Exit(EXIT_HUMAN_REQUIRED) from exc


def repo_callback(
    ctx: typer.Context,
    repo: Annotated[str, Argument(help="Repository name (owner/repo).")],
    github_api_url: Annotated[str | None, Option(envvar="GITHUB_API_URL", help="GitHub API URL.")] = None,
    github_pat_token: Annotated[str | None, Option(envvar="GITHUB_PAT_TOKEN", help="GitHub Personal Access Token.")] = None,
    github_app_id: Annotated[int | None, Option(envvar="GITHUB_APP_ID", help="GitHub App ID.")] = None,
    github_app_private_key_path: Annotated[Path | None, Option(envvar="GITHUB_APP_PRIVATE_KEY_PATH", help="Path to GitHub App private key.")] = None,
    github_app_installation_id: Annotated[int | None, Option(envvar="GITHUB_APP_INSTALLATION_ID", help="GitHub App Installation ID.")] = None,
    upstream_repo_url: Annotated[str | None, Option(envvar="UPSTREAM_REPO_URL", help="Clone URL of the upstream repository.")] = None,
    origin_repo_url: Annotated[
        str | None, Option(envvar="ORIGIN_REPO_URL", help="Clone URL of the fork. Derived from the GitHub API URL when omitted.")
    ] = None,
    upstream_branch: Annotated[str | None, Option(envvar="UPSTREAM_BRANCH", help="Upstream branch to follow.")] = None,
    fork_upstream_branch: Annotated[str | None, Option(envvar="FORK_UPSTREAM_BRANCH", help="Branch mirroring upstream in the fork.")] = None,
    fork_integration_branch: Annotated[str | None, Option(envvar="FORK_INTEGRATION_BRANCH", help="Long-lived integration branch.")] = None,
    production_branch: Annotated[str | None, Option(envvar="PRODUCTION_BRANCH", help="Production branch of the fork.")] = None,
    workspace_dir: Annotated[Path | None, Option(envvar="WORKSPACE_DIR", help="Directory holding the git working copies.")] = None,
    state_dir: Annotated[Path | None, Option(envvar="STATE_DIR", help="Directory holding sync state, locks and validation logs.")] = None,
    validation_commands: Annotated[
        str | None, Option(envvar="VALIDATION_COMMANDS", help="Validation commands, one per line or separated by ';;'.")
    ] = None,
    git_timeout_seconds: Annotated[float | None, Option(envvar="GIT_TIMEOUT_SECONDS", help="Timeout of each git command.")] = None,
    api_timeout_seconds: Annotated[float | None, Option(envvar="API_TIMEOUT_SECONDS", help="Timeout of each GitHub API call.")] = None,
    validation_timeout_seconds: Annotated[
        float | None, Option(envvar="VALIDATION_TIMEOUT_SECONDS", help="Timeout of each validation command.")
    ] = None,
    description_timeout_seconds: Annotated[
        float | None, Option(envvar="DESCRIPTION_TIMEOUT_SECONDS", help="Timeout of sync PR description generation.")
    ] = None,
    lock_timeout_seconds: Annotated[
        float | None, Option(envvar="LOCK_TIMEOUT_SECONDS", help="How long a cascade waits for the repository lock.")
    ] = None,
    conflict_sla_hours: Annotated[int | None, Option(envvar="CONFLICT_SLA_HOURS", help="Hours before unresolved records are escalated.")] = None,
    abandoned_branch_hours: Annotated[
        int | None, Option(envvar="ABANDONED_BRANCH_HOURS", help="Hours before sync branches without an open PR are deleted.")
    ] = None,
    anthropic_api_key: Annotated[str | None, Option(envvar="ANTHROPIC_API_KEY", help="Anthropic API key for sync PR descriptions.")] = None,
    anthropic_model: Annotated[str | None, Option(envvar="ANTHROPIC_MODEL", help="Anthropic model for sync PR descriptions.")] = None,
    debug: Annotated[bool, Option(envvar="DEBUG", help="Enable debug mode.")] = False,
) -> None:
    """Set the repository and resolve the orchestrator configuration for the current context."""
    settings = get_settings()
    configure_logging(debug=debug or settings.DEBUG)

    def pick(value: Any, default: Any) -> Any:
        return value if value is not None else default

    ctx.ensure_object(dict)
    ctx.obj["repo"] = repo
    ctx.obj["github_api_url"] = pick(github_api_url, settings.GITHUB_API_URL)
    ctx.obj["github_pat_token"] = pick(github_pat_token, settings.GITHUB_PAT_TOKEN)
    ctx.obj["github_app_id"] = pick(github_app_id, int(settings.GITHUB_APP_ID) if settings.GITHUB_APP_ID else None)
    ctx.obj["github_app_private_key_path"] = pick(github_app_private_key_path, settings.GITHUB_APP_PRIVATE_KEY_PATH)
    ctx.obj["github_app_installation_id"] = pick(
        github_app_installation_id, int(settings.GITHUB_APP_INSTALLATION_ID) if settings.GITHUB_APP_INSTALLATION_ID else None
    )
    try:
        # Validate GitHub authentication configuration
        ctx.obj["github_auth_type"] = asyncio.run(
            validate_github_authentication_configuration(
                github_pat_token=ctx.obj["github_pat_token"],
                github_app_id=ctx.obj["github_app_id"],
                github_app_private_key_path=ctx.obj["github_app_private_key_path"],
                github_app_installation_id=ctx.obj["github_app_installation_id"],
            )
        )
        ctx.obj["config"] = asyncio.run(
            reconcile_orchestrator_configuration(
                repo=repo,
                upstream_repo_url=pick(upstream_repo_url, settings.UPSTREAM_REPO_URL),
                workspace_dir=pick(workspace_dir, settings.WORKSPACE_DIR),
                state_dir=pick(state_dir, settings.STATE_DIR),
                origin_repo_url=pick(origin_repo_url, settings.ORIGIN_REPO_URL),
                github_api_url=ctx.obj["github_api_url"],
                upstream_branch=pick(upstream_branch, settings.UPSTREAM_BRANCH),
                fork_upstream_branch=pick(fork_upstream_branch, settings.FORK_UPSTREAM_BRANCH),
                fork_integration_branch=pick(fork_integration_branch, settings.FORK_INTEGRATION_BRANCH),
                production_branch=pick(production_branch, settings.PRODUCTION_BRANCH),
                validation_commands=pick(validation_commands, settings.VALIDATION_COMMANDS),
                git_timeout_seconds=pick(git_timeout_seconds, settings.GIT_TIMEOUT_SECONDS),
                api_timeout_seconds=pick(api_timeout_seconds, settings.API_TIMEOUT_SECONDS),
                validation_timeout_seconds=pick(validation_timeout_seconds, settings.VALIDATION_TIMEOUT_SECONDS),
                description_timeout_seconds=pick(description_timeout_seconds, settings.DESCRIPTION_TIMEOUT_SECONDS),
                lock_timeout_seconds=pick(lock_timeout_seconds, settings.LOCK_TIMEOUT_SECONDS),
                conflict_sla_hours=pick(conflict_sla_hours, settings.CONFLICT_SLA_HOURS),
                abandoned_branch_hours=pick(abandoned_branch_hours, settings.ABANDONED_BRANCH_HOURS),
                anthropic_api_key=pick(anthropic_api_key, settings.ANTHROPIC_API_KEY),
                anthropic_model=pick(anthropic_model, settings.ANTHROPIC_MODEL),
            )
        )
    except (GitHubAuthenticationConfigurationUndefinedError, RequiredConfigurationElementError, InvalidConfigurationValueError, ValueError) as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(EXIT_INTEGRITY_ERROR) from exc


repo_app.callback()(repo_callback)


def _authentication(ctx: typer.Context) -> dict[str, Any]:
    """GitHub authentication arguments shared by every workflow."""
    return {
        "github_auth_type": ctx.obj["github_auth_type"],
        "github_pat_token": ctx.obj["github_pat_token"],
        "github_app_id": ctx.obj["github_app_id"],
        "github_app_private_key_path": ctx.obj["github_app_private_key_path"],
        "github_app_installation_id": ctx.obj["github_app_installation_id"],
        "github_api_url": ctx.obj["github_api_url"],
    }


@repo_app.command(name="sync")
def sync_cli(ctx: typer.Context) -> None:
    """Check upstream for new commits and open or refresh the sync pull request."""
    config: OrchestratorConfig = ctx.obj["config"]
    result = run_workflow(run_sync_workflow(config, **_authentication(ctx)))
    typer.echo(f"Action: {result.attempt.action.value}")
    typer.echo(f"Upstream head: {result.attempt.upstream_head}")
    if result.sync_pr is not None:
        typer.echo(f"Sync PR: #{result.sync_pr}")
    if result.tracking_issue is not None:
        typer.echo(f"Tracking issue: #{result.tracking_issue}")
    for branch in result.deleted_branches:
        typer.echo(f"Deleted abandoned branch: {branch}")


@repo_app.command(name="cascade")
def cascade_cli(
    ctx: typer.Context,
    issue_number: Annotated[int, Argument(envvar="ISSUE_NUMBER", help="Tracking issue number of the synchronization cycle.")],
) -> None:
    """Propagate the upstream-tracking branch through integration towards production."""
    config: OrchestratorConfig = ctx.obj["config"]
    run = run_workflow(run_cascade_workflow(config, issue_number, **_authentication(ctx)))
    outcome = run.outcome.value if run.outcome else "unknown"
    typer.echo(f"Cascade for #{issue_number}: {outcome} (stage {run.stage.value})")
    if run.conflict_files:
        typer.echo(f"Conflicted files: {', '.join(run.conflict_files)}")
    if run.conflict_pr is not None:
        typer.echo(f"Conflict PR: #{run.conflict_pr}")
    if run.record_issue is not None:
        typer.echo(f"Record issue: #{run.record_issue}")
    if run.production_pr is not None:
        typer.echo(f"Production PR: #{run.production_pr} ({run.release_branch})")
    if run.outcome is not None and run.outcome.requires_human:
        raise typer.Exit(EXIT_HUMAN_REQUIRED)


@repo_app.command(name="monitor")
def monitor_cli(ctx: typer.Context) -> None:
    """Run the reconciliation pass: missed triggers, escalation, recovery, completion and health."""
    config: OrchestratorConfig = ctx.obj["config"]
    report = run_workflow(run_monitor_workflow(config, **_authentication(ctx)))
    for task in report.tasks:
        status = "ok" if task.succeeded else f"FAILED ({task.error})"
        typer.echo(f"{task.name}: {status}")
        for action in task.actions:
            typer.echo(f"  - {action}")
    if report.health is not None:
        typer.echo("")
        typer.echo(report.health.render())
    if report.integrity_error:
        raise typer.Exit(EXIT_INTEGRITY_ERROR)
    if report.requires_human:
        raise typer.Exit(EXIT_HUMAN_REQUIRED)


@repo_app.command(name="health")
def health_cli(
    ctx: typer.Context,
    summary_file: Annotated[
        Path | None, Option(envvar="GITHUB_STEP_SUMMARY", help="File the Markdown report is appended to, such as a job summary.")
    ] = None,
) -> None:
    """Print the health report of the cascade pipeline without changing anything."""
    config: OrchestratorConfig = ctx.obj["config"]
    report = run_workflow(run_health_workflow(config, **_authentication(ctx)))
    rendered = report.render()
    typer.echo(rendered)
    if summary_file is not None:
        with open(summary_file, "a", encoding="utf-8") as f:
            f.write(rendered)


typer_app.add_typer(repo_app, name="repo")


if __name__ == "__main__":
    typer_app()
