"""Unit tests for the reconciliation monitor tasks."""

import json
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from conftest import FakeGitHubClient, FakeGitRepository, FakeValidationRunner, hours_ago, seed_tracking_issue

from fork_sync_manager.cascade.engine import CascadeEngine
from fork_sync_manager.cascade.models import CascadeOutcome
from fork_sync_manager.configuration.models import OrchestratorConfig
from fork_sync_manager.monitor.health import HealthStatus
from fork_sync_manager.monitor.models import MonitorTaskResult
from fork_sync_manager.monitor.reconcile import ReconciliationMonitor
from fork_sync_manager.state.lock import lock_path_for
from fork_sync_manager.utils.constants import ESCALATES_MARKER, PRODUCTION_PR_MARKER, TRACKING_ISSUE_MARKER
from fork_sync_manager.vcs.exceptions import GitCommandError


@pytest.fixture
def monitor(
    config: OrchestratorConfig,
    github_client: FakeGitHubClient,
    git_repository: FakeGitRepository,
    validation_runner: FakeValidationRunner,
) -> ReconciliationMonitor:
    """Monitor over the fakes, sharing the scripted git gateway with its cascade engine."""
    engine = CascadeEngine(config, github_client, git_repository, validation_runner, lock_poll_interval=0.05)  # type: ignore[arg-type]
    return ReconciliationMonitor(config, github_client, git_repository, engine)  # type: ignore[arg-type]


def seed_conflict_record(client: FakeGitHubClient, tracking_issue: int, age_hours: float, labels: list[str] | None = None) -> int:
    """Create a conflict record opened ``age_hours`` ago for a tracking issue."""
    record = client.add_issue(
        title=f"Merge conflicts blocking upstream sync #{tracking_issue}",
        body=f"Conflicts\n{TRACKING_ISSUE_MARKER.format(number=tracking_issue)}",
        labels=labels or ["conflict", "cascade-blocked", "high-priority", "human-required"],
        created_at=hours_ago(age_hours),
    )
    return record.number


def link_production_pr(issue: SimpleNamespace, pull_request: SimpleNamespace) -> None:
    """Record the production PR on its tracking issue, as the cascade does."""
    issue.body = f"{issue.body}\n{PRODUCTION_PR_MARKER.format(number=pull_request.number)}"


def hold_lock_as_other_command(config: OrchestratorConfig) -> None:
    """Leave a live lock file in place so cascades cannot start."""
    lock_path = lock_path_for(config.state_dir, config.repo)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(json.dumps({"pid": os.getpid(), "command": "cascade 99", "token": "other"}), encoding="utf-8")


# Missed trigger detection


@pytest.mark.asyncio
async def test_missed_trigger_starts_cascade(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """Upstream commits missing from integration with a merged sync PR start the cascade."""
    issue = seed_tracking_issue(github_client)
    result = MonitorTaskResult(name="missed_trigger")

    await monitor.detect_missed_trigger(result)

    [run] = result.cascades
    assert run.tracking_issue == issue.number
    assert run.outcome is CascadeOutcome.PRODUCTION_PR_CREATED
    assert github_client.labels_of(issue.number) == {"upstream-sync", "validated"}
    assert "Automatic cascade" in github_client.comments_on(issue.number)[0]


@pytest.mark.asyncio
async def test_missed_trigger_is_quiet_when_integration_is_current(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, git_repository: FakeGitRepository
) -> None:
    """Nothing happens when integration already contains the upstream-tracking branch."""
    git_repository.counts[("origin/fork_integration", "origin/fork_upstream")] = 0
    seed_tracking_issue(github_client)
    result = MonitorTaskResult(name="missed_trigger")

    await monitor.detect_missed_trigger(result)

    assert result.cascades == []
    assert github_client.comments == []


@pytest.mark.asyncio
async def test_missed_trigger_waits_for_sync_pr_merge(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """A tracking issue whose sync PR is still open is not cascaded."""
    seed_tracking_issue(github_client, sync_pr_merged=False)
    result = MonitorTaskResult(name="missed_trigger")

    await monitor.detect_missed_trigger(result)

    assert result.cascades == []
    assert github_client.comments == []


@pytest.mark.asyncio
async def test_missed_trigger_picks_newest_tracking_issue(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """Only the newest ready tracking issue is cascaded."""
    older = seed_tracking_issue(github_client)
    newer = seed_tracking_issue(github_client)
    result = MonitorTaskResult(name="missed_trigger")

    await monitor.detect_missed_trigger(result)

    assert [run.tracking_issue for run in result.cascades] == [newer.number]
    assert github_client.labels_of(older.number) == {"upstream-sync", "human-required"}


@pytest.mark.asyncio
async def test_missed_trigger_waits_while_another_cycle_holds_the_pipeline(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """A ready issue is not cascaded or annotated while another cycle's production PR is open."""
    validated = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    production_pr = github_client.add_pull_request(
        base="main",
        head="release/upstream-20240102-000000",
        labels=["upstream-sync", "human-required"],
        body=TRACKING_ISSUE_MARKER.format(number=validated.number),
    )
    issue = seed_tracking_issue(github_client)
    result = MonitorTaskResult(name="missed_trigger")

    await monitor.detect_missed_trigger(result)

    assert result.cascades == []
    assert result.actions == [f"held #{issue.number}"]
    assert github_client.comments_on(issue.number) == []

    github_client.merge_pull_request(production_pr.number)
    resumed = MonitorTaskResult(name="missed_trigger")
    await monitor.detect_missed_trigger(resumed)

    [run] = resumed.cascades
    assert run.tracking_issue == issue.number
    assert run.outcome is CascadeOutcome.PRODUCTION_PR_CREATED


@pytest.mark.asyncio
async def test_missed_trigger_reports_lock_timeout(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, config: OrchestratorConfig
) -> None:
    """A cascade that cannot start is annotated on the tracking issue and fails the task."""
    issue = seed_tracking_issue(github_client)
    hold_lock_as_other_command(config)

    report = await monitor.run()

    [missed_trigger] = [task for task in report.tasks if task.name == "missed_trigger"]
    assert not missed_trigger.succeeded
    assert "could not start" in missed_trigger.error
    assert "Automatic cascade could not start" in github_client.comments_on(issue.number)[-1]
    assert github_client.labels_of(issue.number) == {"upstream-sync", "human-required"}


# SLA escalation


@pytest.mark.asyncio
async def test_stale_conflict_is_escalated_exactly_once(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """A conflict record open past its SLA gets one escalation issue across repeated passes."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-blocked"])
    record_number = seed_conflict_record(github_client, issue.number, age_hours=49)

    first = MonitorTaskResult(name="escalation")
    await monitor.escalate_stale_records(first)
    second = MonitorTaskResult(name="escalation")
    await monitor.escalate_stale_records(second)

    [escalation] = github_client.issues_labeled("escalation")
    assert ESCALATES_MARKER.format(number=record_number) in escalation.body
    assert github_client.labels_of(escalation.number) == {"escalation", "high-priority", "human-required"}
    assert "cascade-escalated" in github_client.labels_of(record_number)
    assert first.actions == [f"escalated #{record_number} in #{escalation.number}"]
    assert second.actions == []
    assert len(github_client.comments_on(record_number)) == 1
    assert f"#{escalation.number}" in github_client.comments_on(issue.number)[0]


@pytest.mark.parametrize(
    "age_hours,expected_escalations",
    [
        pytest.param(10, 0, id="within_sla"),
        pytest.param(47.5, 0, id="just_before_deadline"),
        pytest.param(48.5, 1, id="just_past_deadline"),
    ],
)
@pytest.mark.asyncio
async def test_escalation_respects_sla(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, age_hours: float, expected_escalations: int
) -> None:
    """Records are escalated only once the 48-hour SLA has passed."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-blocked"])
    seed_conflict_record(github_client, issue.number, age_hours=age_hours)

    await monitor.escalate_stale_records(MonitorTaskResult(name="escalation"))

    assert len(github_client.issues_labeled("escalation")) == expected_escalations


@pytest.mark.asyncio
async def test_stale_validation_failure_is_escalated(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """Validation failure records follow the same SLA as conflicts."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-failed", "human-required"])
    record_number = seed_conflict_record(
        github_client, issue.number, age_hours=72, labels=["validation-failed", "high-priority", "human-required"]
    )

    await monitor.escalate_stale_records(MonitorTaskResult(name="escalation"))

    [escalation] = github_client.issues_labeled("escalation")
    assert "validation failure" in escalation.title
    assert "cascade-escalated" in github_client.labels_of(record_number)


@pytest.mark.asyncio
async def test_existing_escalation_restores_marker_label(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """A record whose marker label was removed is relabeled instead of escalated again."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-blocked"])
    record_number = seed_conflict_record(github_client, issue.number, age_hours=60)
    github_client.add_issue(
        title="ESCALATION",
        body=ESCALATES_MARKER.format(number=record_number),
        labels=["escalation", "high-priority", "human-required"],
    )

    await monitor.escalate_stale_records(MonitorTaskResult(name="escalation"))

    assert len(github_client.issues_labeled("escalation")) == 1
    assert "cascade-escalated" in github_client.labels_of(record_number)
    assert github_client.comments_on(record_number) == []


@pytest.mark.asyncio
async def test_escalation_closes_once_record_is_resolved(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """An open escalation is closed after its record has been closed."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-blocked"])
    record_number = seed_conflict_record(github_client, issue.number, age_hours=60)
    escalation = github_client.add_issue(
        title="ESCALATION",
        body=ESCALATES_MARKER.format(number=record_number),
        labels=["escalation", "high-priority", "human-required"],
    )
    github_client.issues[record_number].state = "closed"
    result = MonitorTaskResult(name="escalation")

    await monitor.escalate_stale_records(result)

    assert escalation.state == "closed"
    assert result.actions == [f"closed escalation #{escalation.number}"]


# Automatic recovery


@pytest.mark.asyncio
async def test_recovery_retries_cascade(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """A failed cascade whose human-required label was removed is retried."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-failed"])
    result = MonitorTaskResult(name="recovery")

    await monitor.recover_failed_cascades(result)

    [run] = result.cascades
    assert run.outcome is CascadeOutcome.PRODUCTION_PR_CREATED
    assert result.succeeded
    assert github_client.labels_of(issue.number) == {"upstream-sync", "validated"}
    assert "Automatic recovery" in github_client.comments_on(issue.number)[0]


@pytest.mark.asyncio
async def test_recovery_waits_while_another_cycle_holds_the_pipeline(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """Recovery leaves the issue ready for retry while another cycle's production PR is open."""
    validated = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    github_client.add_pull_request(
        base="main",
        head="release/upstream-20240102-000000",
        labels=["upstream-sync", "human-required"],
        body=TRACKING_ISSUE_MARKER.format(number=validated.number),
    )
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-failed"])
    result = MonitorTaskResult(name="recovery")

    await monitor.recover_failed_cascades(result)

    assert result.cascades == []
    assert result.actions == [f"held #{issue.number}"]
    assert result.succeeded
    assert github_client.labels_of(issue.number) == {"upstream-sync", "cascade-failed"}
    assert github_client.comments_on(issue.number) == []


@pytest.mark.asyncio
async def test_recovery_ignores_failures_still_awaiting_human(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """A failed cascade that still carries human-required is left alone."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-failed", "human-required"])
    result = MonitorTaskResult(name="recovery")

    await monitor.recover_failed_cascades(result)

    assert result.cascades == []
    assert github_client.labels_of(issue.number) == {"upstream-sync", "cascade-failed", "human-required"}


@pytest.mark.asyncio
async def test_recovery_reverts_when_cascade_cannot_start(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, config: OrchestratorConfig
) -> None:
    """If the retried cascade cannot take the lock, the issue goes back to CASCADE_FAILED."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-failed"])
    hold_lock_as_other_command(config)
    result = MonitorTaskResult(name="recovery")

    await monitor.recover_failed_cascades(result)

    assert result.error == f"recovery could not start for #{issue.number}"
    assert github_client.labels_of(issue.number) == {"upstream-sync", "cascade-failed", "human-required"}
    comments = github_client.comments_on(issue.number)
    assert len(comments) == 2
    assert "could not start" in comments[1]


# Cycle completion


@pytest.mark.asyncio
async def test_completion_closes_issue_and_deletes_release_branch(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, git_repository: FakeGitRepository
) -> None:
    """A merged production PR closes its VALIDATED tracking issue."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    production_pr = github_client.add_pull_request(
        base="main",
        head="release/upstream-20240102-000000",
        labels=["upstream-sync", "human-required"],
        body=TRACKING_ISSUE_MARKER.format(number=issue.number),
    )
    link_production_pr(issue, production_pr)
    github_client.merge_pull_request(production_pr.number)
    result = MonitorTaskResult(name="completion")

    await monitor.complete_merged_cycles(result)

    assert github_client.issues[issue.number].state == "closed"
    assert git_repository.deleted == ["release/upstream-20240102-000000"]
    assert result.actions == [f"closed #{issue.number}"]
    assert f"#{production_pr.number}" in github_client.comments_on(issue.number)[-1]


@pytest.mark.asyncio
async def test_completion_ignores_unmerged_production_pr(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, git_repository: FakeGitRepository
) -> None:
    """A production PR closed without merging does not complete the cycle."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    production_pr = github_client.add_pull_request(
        base="main",
        head="release/upstream-20240102-000000",
        labels=["upstream-sync", "human-required"],
        body=TRACKING_ISSUE_MARKER.format(number=issue.number),
        state="closed",
    )
    link_production_pr(issue, production_pr)

    await monitor.complete_merged_cycles(MonitorTaskResult(name="completion"))

    assert github_client.issues[issue.number].state == "open"
    assert git_repository.deleted == []


@pytest.mark.asyncio
async def test_completion_survives_branch_deletion_failure(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, git_repository: FakeGitRepository
) -> None:
    """Failing to delete the release branch does not undo closing the issue."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    production_pr = github_client.add_pull_request(
        base="main",
        head="release/upstream-20240102-000000",
        labels=["upstream-sync"],
        body=TRACKING_ISSUE_MARKER.format(number=issue.number),
    )
    link_production_pr(issue, production_pr)
    github_client.merge_pull_request(production_pr.number)
    git_repository.delete_remote_branch = AsyncMock(  # type: ignore[method-assign]
        side_effect=GitCommandError(["push", "origin", "--delete"], 1, "", "remote ref does not exist")
    )
    result = MonitorTaskResult(name="completion")

    await monitor.complete_merged_cycles(result)

    assert result.succeeded
    assert github_client.issues[issue.number].state == "closed"


@pytest.mark.asyncio
async def test_completion_reads_only_the_referenced_production_pr(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, git_repository: FakeGitRepository
) -> None:
    """Completion fetches the PR named on the tracking issue instead of listing closed PRs."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    production_pr = github_client.add_pull_request(
        base="main",
        head="release/upstream-20240102-000000",
        labels=["upstream-sync"],
        body=TRACKING_ISSUE_MARKER.format(number=issue.number),
    )
    link_production_pr(issue, production_pr)
    github_client.merge_pull_request(production_pr.number)
    unlinked = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    github_client.list_pull_requests = AsyncMock(return_value=[])  # type: ignore[method-assign]
    result = MonitorTaskResult(name="completion")

    await monitor.complete_merged_cycles(result)

    github_client.list_pull_requests.assert_not_awaited()
    assert result.actions == [f"closed #{issue.number}"]
    assert github_client.issues[issue.number].state == "closed"
    assert github_client.issues[unlinked.number].state == "open"


# Full pass


@pytest.mark.asyncio
async def test_task_failure_does_not_stop_other_tasks(
    monitor: ReconciliationMonitor, github_client: FakeGitHubClient, git_repository: FakeGitRepository
) -> None:
    """One task raising still lets the remaining tasks and the health report run."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "validated"])
    production_pr = github_client.add_pull_request(
        base="main",
        head="release/upstream-20240102-000000",
        labels=["upstream-sync"],
        body=TRACKING_ISSUE_MARKER.format(number=issue.number),
    )
    link_production_pr(issue, production_pr)
    github_client.merge_pull_request(production_pr.number)
    git_repository.fetch = AsyncMock(side_effect=RuntimeError("network unreachable"))  # type: ignore[method-assign]

    report = await monitor.run()

    assert [task.name for task in report.tasks] == ["missed_trigger", "escalation", "recovery", "completion", "health"]
    assert [task.name for task in report.failed_tasks] == ["missed_trigger"]
    assert report.failed_tasks[0].error == "RuntimeError: network unreachable"
    assert github_client.issues[issue.number].state == "closed"
    assert report.health is not None
    assert report.health.status is HealthStatus.HEALTHY
    assert report.requires_human
    assert not report.integrity_error


@pytest.mark.asyncio
async def test_inconsistent_labels_flag_integrity_error(monitor: ReconciliationMonitor, github_client: FakeGitHubClient) -> None:
    """Tracking issues with contradictory labels stop the affected tasks and turn health CRITICAL."""
    issue = seed_tracking_issue(github_client, labels=["upstream-sync", "cascade-active", "cascade-blocked"])

    report = await monitor.run()

    assert report.integrity_error
    assert {task.name for task in report.tasks if task.integrity_error} == {"missed_trigger", "recovery", "completion"}
    assert report.health is not None
    assert report.health.status is HealthStatus.CRITICAL
    assert [item.number for item in report.health.inconsistent] == [issue.number]
    assert github_client.comments == []
