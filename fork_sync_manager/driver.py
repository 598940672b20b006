"""Orchestrates one invocation of the sync, cascade, monitor and health workflows."""

import time
from pathlib import Path

import structlog

from fork_sync_manager.cascade.engine import CascadeEngine
from fork_sync_manager.cascade.models import CascadeRun
from fork_sync_manager.cascade.validation import ValidationRunner
from fork_sync_manager.configuration.models import GitHubAuthenticationType, OrchestratorConfig
from fork_sync_manager.github.adapter import GitHubKitAdapter
from fork_sync_manager.monitor.health import HealthReport, build_health_report
from fork_sync_manager.monitor.models import MonitorReport
from fork_sync_manager.monitor.reconcile import ReconciliationMonitor
from fork_sync_manager.state.store import SyncStateStore
from fork_sync_manager.synchronize.descriptions import select_description_generator
from fork_sync_manager.synchronize.results import UpstreamSyncResult
from fork_sync_manager.synchronize.upstream import UpstreamSyncEngine
from fork_sync_manager.vcs.git import GitRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# Each workflow keeps its own working copy. Only the cascade copy is written while the lock is held.
SYNC_WORKING_COPY = "sync"
CASCADE_WORKING_COPY = "cascade"
MONITOR_WORKING_COPY = "monitor"


async def build_github_adapter(
    config: OrchestratorConfig,
    github_auth_type: GitHubAuthenticationType,
    github_pat_token: str | None,
    github_app_id: int | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: int | None,
    github_api_url: str,
) -> GitHubKitAdapter:
    """Create the hosting API adapter for the configured repository."""
    return await GitHubKitAdapter.create(
        repo=config.repo,
        github_auth_type=github_auth_type,
        github_pat_token=github_pat_token,
        github_app_id=github_app_id,
        github_app_private_key_path=github_app_private_key_path,
        github_app_installation_id=github_app_installation_id,
        github_api_url=github_api_url,
        timeout=config.api_timeout_seconds,
    )


async def prepare_working_copy(config: OrchestratorConfig, name: str) -> GitRepository:
    """Clone the fork into a named working copy, or reuse the existing one."""
    git = GitRepository(
        config.repository_workspace / name,
        timeout=config.git_timeout_seconds,
        user_name=config.git_user_name,
        user_email=config.git_user_email,
    )
    await git.ensure_clone(config.origin_repo_url)
    return git


def build_cascade_engine(config: OrchestratorConfig, client: GitHubKitAdapter, git: GitRepository) -> CascadeEngine:
    """Wire the branch propagation engine and its validation pipeline."""
    validation_runner = ValidationRunner(
        commands=config.validation_commands,
        log_dir=config.state_dir / "logs",
        timeout=config.validation_timeout_seconds,
    )
    return CascadeEngine(config, client, git, validation_runner)


async def run_sync_workflow(
    config: OrchestratorConfig,
    github_auth_type: GitHubAuthenticationType,
    github_pat_token: str | None,
    github_app_id: int | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: int | None,
    github_api_url: str,
) -> UpstreamSyncResult:
    """Run the sync decision engine once."""
    client = await build_github_adapter(
        config, github_auth_type, github_pat_token, github_app_id, github_app_private_key_path, github_app_installation_id, github_api_url
    )
    git = await prepare_working_copy(config, SYNC_WORKING_COPY)
    store = SyncStateStore(config.state_dir, config.repo)
    engine = UpstreamSyncEngine(config, client, git, store, select_description_generator(config))

    start_time = time.time()
    logger.info("Running upstream sync", repo=config.repo, upstream=config.upstream_repo_url, upstream_branch=config.upstream_branch)
    result = await engine.run()
    logger.info(
        "Finished upstream sync",
        repo=config.repo,
        action=result.attempt.action.value,
        sync_pr=result.sync_pr,
        tracking_issue=result.tracking_issue,
        state_written=result.state_written,
        duration=round(time.time() - start_time, 2),
    )
    return result


async def run_cascade_workflow(
    config: OrchestratorConfig,
    issue_number: int,
    github_auth_type: GitHubAuthenticationType,
    github_pat_token: str | None,
    github_app_id: int | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: int | None,
    github_api_url: str,
) -> CascadeRun:
    """Run one cascade for a tracking issue."""
    client = await build_github_adapter(
        config, github_auth_type, github_pat_token, github_app_id, github_app_private_key_path, github_app_installation_id, github_api_url
    )
    git = await prepare_working_copy(config, CASCADE_WORKING_COPY)
    engine = build_cascade_engine(config, client, git)

    start_time = time.time()
    logger.info("Running cascade", repo=config.repo, tracking_issue=issue_number)
    run = await engine.run(issue_number)
    logger.info(
        "Finished cascade",
        repo=config.repo,
        tracking_issue=issue_number,
        outcome=run.outcome.value if run.outcome else None,
        stage=run.stage.value,
        production_pr=run.production_pr,
        conflict_pr=run.conflict_pr,
        record_issue=run.record_issue,
        duration=round(time.time() - start_time, 2),
    )
    return run


async def run_monitor_workflow(
    config: OrchestratorConfig,
    github_auth_type: GitHubAuthenticationType,
    github_pat_token: str | None,
    github_app_id: int | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: int | None,
    github_api_url: str,
) -> MonitorReport:
    """Run one reconciliation pass."""
    client = await build_github_adapter(
        config, github_auth_type, github_pat_token, github_app_id, github_app_private_key_path, github_app_installation_id, github_api_url
    )
    monitor_git = await prepare_working_copy(config, MONITOR_WORKING_COPY)
    cascade_git = await prepare_working_copy(config, CASCADE_WORKING_COPY)
    monitor = ReconciliationMonitor(config, client, monitor_git, build_cascade_engine(config, client, cascade_git))

    start_time = time.time()
    logger.info("Running reconciliation monitor", repo=config.repo)
    report = await monitor.run()
    logger.info(
        "Finished reconciliation monitor",
        repo=config.repo,
        failed_tasks=[task.name for task in report.failed_tasks],
        duration=round(time.time() - start_time, 2),
    )
    return report


async def run_health_workflow(
    config: OrchestratorConfig,
    github_auth_type: GitHubAuthenticationType,
    github_pat_token: str | None,
    github_app_id: int | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: int | None,
    github_api_url: str,
) -> HealthReport:
    """Build the health report without touching git or any issue."""
    client = await build_github_adapter(
        config, github_auth_type, github_pat_token, github_app_id, github_app_private_key_path, github_app_installation_id, github_api_url
    )
    return await build_health_report(client)
