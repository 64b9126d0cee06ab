import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cadencekit.config import CadenceConfig, ProgressConfig
from cadencekit.contracts import ExecutionReport
from cadencekit.errors import CadenceError, GraphIntegrityError, NotFoundError
from cadencekit.graph import (
    ActionConfig,
    CadenceGraph,
    CadenceStatus,
    StepNode,
    StepType,
)
from cadencekit.persistence import InMemoryCadenceRepository, SQLiteCadenceRepository
from cadencekit.persistence.models import (
    EnrollmentStatus,
    LeadEnrollment,
    ScheduleStatus,
    StepInstanceStatus,
)
from cadencekit.progress import LeadProgress

OWNER = "owner-1"
START = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)
CLOCK_NOW = datetime(2024, 3, 4, 11, 0, tzinfo=timezone.utc)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _progress(repo, **kwargs):
    kwargs.setdefault("clock", lambda: CLOCK_NOW)
    return LeadProgress(repo, **kwargs)


def _report(entry, outcome="sent", **kwargs):
    return ExecutionReport(entry_id=entry.id, owner_id=OWNER, outcome=outcome, **kwargs)


async def _enroll(progress, lead_id="lead-1", **kwargs):
    kwargs.setdefault("started_at", START)
    return await progress.enroll(OWNER, "c1", lead_id, **kwargs)


@pytest.mark.asyncio
async def test_enroll_schedules_first_step(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)

    result = await _enroll(progress, lead={"first_name": "Ada"}, timezone="Europe/Berlin")

    assert result.outcome == "scheduled"
    assert result.enrollment.current_step_id == "intro"
    assert result.enrollment.timezone == "Europe/Berlin"
    assert result.entry.step_id == "intro"
    # 10:00 Berlin (UTC+1 in March before DST)
    assert result.entry.scheduled_at == _utc(2024, 3, 4, 9, 0)
    stored = await repo.get_enrollment(OWNER, result.enrollment.id)
    assert stored.current_step_id == "intro"
    assert stored.lead == {"first_name": "Ada"}


@pytest.mark.asyncio
async def test_enroll_twice_keeps_one_enrollment(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)

    first = await _enroll(progress)
    second = await _enroll(progress)

    assert second.enrollment.id == first.enrollment.id
    assert second.outcome == "unchanged"
    assert len(await repo.list_schedule_entries(OWNER)) == 1


@pytest.mark.asyncio
async def test_enroll_requires_active_cadence(repo, branching_graph):
    branching_graph.status = CadenceStatus.DRAFT
    await repo.save_graph(branching_graph)
    with pytest.raises(CadenceError, match="only active cadences"):
        await _enroll(_progress(repo))
    with pytest.raises(NotFoundError):
        await _progress(repo).enroll(OWNER, "missing", "lead-1")


@pytest.mark.asyncio
async def test_enroll_rejects_unknown_timezone(repo, branching_graph):
    await repo.save_graph(branching_graph)
    with pytest.raises(Exception):
        await _enroll(_progress(repo), timezone="Mars/Olympus")
    assert await repo.list_enrollments(OWNER) == []


@pytest.mark.asyncio
async def test_sent_outcome_advances_through_condition(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)

    result = await progress.record_outcome(
        _report(enrolled.entry, rendered_content="Hi Ada", result={"message_id": "m1"})
    )

    assert result.outcome == "scheduled"
    assert result.enrollment.current_step_id == "nudge"
    assert result.entry.scheduled_at == _utc(2024, 3, 9, 10, 0)
    intro = await repo.get_step_instance(OWNER, enrolled.enrollment.id, "intro")
    assert intro.status is StepInstanceStatus.SENT
    assert intro.rendered_content == "Hi Ada"
    assert intro.result == {"message_id": "m1"}
    entry = await repo.get_schedule_entry(OWNER, enrolled.entry.id)
    assert entry.status is ScheduleStatus.EXECUTED
    condition = await repo.get_step_instance(OWNER, enrolled.enrollment.id, "replied")
    assert condition.branch == "no"


@pytest.mark.asyncio
async def test_reply_signal_before_evaluation_takes_yes_branch(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)

    await progress.update_context(
        OWNER, enrolled.enrollment.id, signals={"replied": True, "last_reply": "sure"}
    )
    result = await progress.record_outcome(_report(enrolled.entry))

    assert result.enrollment.current_step_id == "thanks"
    assert result.entry.channel == "email"


@pytest.mark.asyncio
async def test_reply_after_branch_resolution_keeps_recorded_branch(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    await progress.record_outcome(_report(enrolled.entry))

    await progress.update_context(OWNER, enrolled.enrollment.id, signals={"replied": True})
    result = await progress.advance(OWNER, enrolled.enrollment.id)

    assert result.outcome == "unchanged"
    assert result.enrollment.current_step_id == "nudge"


@pytest.mark.asyncio
async def test_last_step_completes_enrollment(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    nudge = await progress.record_outcome(_report(enrolled.entry))

    done = await progress.record_outcome(_report(nudge.entry))

    assert done.outcome == "completed"
    assert done.enrollment.status is EnrollmentStatus.COMPLETED
    assert done.enrollment.current_step_id is None
    again = await progress.advance(OWNER, enrolled.enrollment.id)
    assert again.outcome == "unchanged"


@pytest.mark.asyncio
async def test_generated_outcome_is_not_terminal(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)

    result = await progress.record_outcome(
        _report(enrolled.entry, outcome="generated", rendered_content="draft")
    )

    assert result.outcome == "unchanged"
    assert result.instance.status is StepInstanceStatus.GENERATED
    assert result.instance.rendered_content == "draft"
    assert result.enrollment.current_step_id == "intro"


@pytest.mark.asyncio
async def test_duplicate_report_is_ignored(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)

    await progress.record_outcome(_report(enrolled.entry))
    duplicate = await progress.record_outcome(_report(enrolled.entry))

    assert duplicate.outcome == "unchanged"
    assert len(await repo.list_step_instances(OWNER, enrolled.enrollment.id)) == 3


@pytest.mark.asyncio
async def test_failure_halts_enrollment(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)

    result = await progress.record_outcome(
        _report(enrolled.entry, outcome="failed", error="provider rejected message")
    )

    assert result.outcome == "halted"
    assert result.enrollment.status is EnrollmentStatus.FAILED
    assert result.enrollment.last_error == "provider rejected message"
    entry = await repo.get_schedule_entry(OWNER, enrolled.entry.id)
    assert entry.status is ScheduleStatus.FAILED
    assert entry.last_error == "provider rejected message"
    intro = await repo.get_step_instance(OWNER, enrolled.enrollment.id, "intro")
    assert intro.status is StepInstanceStatus.FAILED


@pytest.mark.asyncio
async def test_failure_can_continue_when_halting_is_off(repo, branching_graph):
    await repo.save_graph(branching_graph)
    config = CadenceConfig(progress=ProgressConfig(halt_on_failure=False))
    progress = _progress(repo, config=config)
    enrolled = await _enroll(progress)

    result = await progress.record_outcome(_report(enrolled.entry, outcome="failed", error="x"))

    assert result.outcome == "scheduled"
    assert result.enrollment.current_step_id == "nudge"


@pytest.mark.asyncio
async def test_skipped_outcome_cancels_entry_and_advances(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)

    result = await progress.record_outcome(_report(enrolled.entry, outcome="skipped"))

    assert result.outcome == "scheduled"
    entry = await repo.get_schedule_entry(OWNER, enrolled.entry.id)
    assert entry.status is ScheduleStatus.CANCELED


@pytest.mark.asyncio
async def test_pause_skips_only_scheduled_entries(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    nudge = await progress.record_outcome(_report(enrolled.entry))

    result = await progress.pause(OWNER, enrolled.enrollment.id)

    assert result.enrollment.status is EnrollmentStatus.PAUSED
    executed = await repo.get_schedule_entry(OWNER, enrolled.entry.id)
    skipped = await repo.get_schedule_entry(OWNER, nudge.entry.id)
    assert executed.status is ScheduleStatus.EXECUTED
    assert skipped.status is ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE
    assert (await progress.advance(OWNER, enrolled.enrollment.id)).outcome == "unchanged"
    assert (await progress.pause(OWNER, enrolled.enrollment.id)).outcome == "unchanged"


@pytest.mark.asyncio
async def test_resume_reschedules_waiting_step(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    await progress.pause(OWNER, enrolled.enrollment.id)

    result = await progress.resume(OWNER, enrolled.enrollment.id)

    assert result.outcome == "scheduled"
    assert result.enrollment.status is EnrollmentStatus.ACTIVE
    assert result.entry.step_id == "intro"
    assert result.entry.id != enrolled.entry.id
    # the original 10:00 slot already passed at resume time
    assert result.entry.scheduled_at == CLOCK_NOW
    live = await repo.list_schedule_entries(OWNER, status=ScheduleStatus.SCHEDULED)
    assert [e.id for e in live] == [result.entry.id]


@pytest.mark.asyncio
async def test_fail_marks_enrollment_and_skips_entries(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)

    result = await progress.fail(OWNER, enrolled.enrollment.id, "lead unsubscribed")

    assert result.outcome == "halted"
    assert result.enrollment.last_error == "lead unsubscribed"
    entry = await repo.get_schedule_entry(OWNER, enrolled.entry.id)
    assert entry.status is ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE
    again = await progress.fail(OWNER, enrolled.enrollment.id, "again")
    assert again.outcome == "unchanged"


@pytest.mark.asyncio
async def test_concurrent_advance_schedules_once(repo, branching_graph):
    await repo.save_graph(branching_graph)
    enrollment = await repo.create_enrollment(
        LeadEnrollment(owner_id=OWNER, cadence_id="c1", lead_id="lead-1", started_at=START)
    )
    progress = _progress(repo)
    other = _progress(repo)

    results = await asyncio.gather(
        progress.advance(OWNER, enrollment.id),
        progress.advance(OWNER, enrollment.id),
        other.advance(OWNER, enrollment.id),
    )

    assert sorted(r.outcome for r in results) == ["scheduled", "unchanged", "unchanged"]
    entries = await repo.list_schedule_entries(OWNER)
    assert len(entries) == 1
    assert len(await repo.list_step_instances(OWNER, enrollment.id)) == 1


@pytest.mark.asyncio
async def test_integrity_error_halts_enrollment(repo):
    broken = StepNode(
        id="mail", cadence_id="c1", config=ActionConfig(step_type=StepType.SEND_EMAIL)
    )
    graph = CadenceGraph.build("c1", OWNER, [broken], status=CadenceStatus.ACTIVE)
    await repo.save_graph(graph)

    with pytest.raises(GraphIntegrityError):
        await _enroll(_progress(repo))

    (enrollment,) = await repo.list_enrollments(OWNER)
    assert enrollment.status is EnrollmentStatus.FAILED
    assert "mail" in enrollment.last_error


@pytest.mark.asyncio
async def test_unready_channel_blocks_until_ready(repo, branching_graph):
    await repo.save_graph(branching_graph)
    ready = {"linkedin": False}

    async def channel_ready(owner_id, channel):
        return ready.get(channel, True)

    progress = _progress(repo, channel_ready=channel_ready)
    blocked = await _enroll(progress)

    assert blocked.outcome == "blocked"
    assert "linkedin" in blocked.detail
    assert blocked.enrollment.current_step_id is None
    assert await repo.list_schedule_entries(OWNER) == []

    ready["linkedin"] = True
    result = await progress.advance(OWNER, blocked.enrollment.id)
    assert result.outcome == "scheduled"
    assert result.instance.id == blocked.instance.id


@pytest.mark.asyncio
async def test_paused_cadence_blocks_advance(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    branching_graph.status = CadenceStatus.PAUSED
    await repo.save_graph(branching_graph)

    result = await progress.record_outcome(_report(enrolled.entry))

    assert result.outcome == "blocked"
    assert result.detail == "cadence is paused"


@pytest.mark.asyncio
async def test_delay_release_schedules_following_step(repo, delay_graph):
    await repo.save_graph(delay_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    waiting = await progress.record_outcome(_report(enrolled.entry))

    assert waiting.entry.node_kind == "delay"
    assert waiting.entry.scheduled_at == _utc(2024, 3, 6, 8, 0)

    released_at = waiting.entry.scheduled_at + timedelta(minutes=1)
    result = await progress.complete_delay(OWNER, waiting.entry.id, now=released_at)

    assert result.outcome == "scheduled"
    assert result.entry.step_id == "bump"
    assert result.entry.scheduled_at == _utc(2024, 3, 6, 9, 0)

    late = await progress.complete_delay(OWNER, waiting.entry.id, now=released_at)
    assert late.outcome == "unchanged"


@pytest.mark.asyncio
async def test_late_delay_release_pushes_next_step(repo, delay_graph):
    await repo.save_graph(delay_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    waiting = await progress.record_outcome(_report(enrolled.entry))

    released_at = _utc(2024, 3, 6, 13, 30)
    result = await progress.complete_delay(OWNER, waiting.entry.id, now=released_at)

    assert result.entry.scheduled_at == released_at
    wait = await repo.get_step_instance(OWNER, enrolled.enrollment.id, "wait")
    assert wait.status is StepInstanceStatus.SENT
    again = await progress.complete_delay(OWNER, waiting.entry.id, now=released_at)
    assert again.outcome == "unchanged"


@pytest.mark.asyncio
async def test_complete_delay_rejects_action_entries(repo, delay_graph):
    await repo.save_graph(delay_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress)
    with pytest.raises(ValueError):
        await progress.complete_delay(OWNER, enrolled.entry.id)


@pytest.mark.asyncio
async def test_condition_context_includes_outcomes(repo, branching_graph):
    await repo.save_graph(branching_graph)
    progress = _progress(repo)
    enrolled = await _enroll(progress, lead={"company": "Acme"})
    await progress.record_outcome(_report(enrolled.entry))

    enrollment = await repo.get_enrollment(OWNER, enrolled.enrollment.id)
    context = await progress.build_context(enrollment)

    assert context.lead == {"company": "Acme"}
    assert context.outcomes["intro"] == "sent"
    assert context.outcomes["replied"] == "sent"
    assert context.as_of == CLOCK_NOW
    assert context.enrolled_at == START


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCadenceRepository()
    return SQLiteCadenceRepository(tmp_path / "progress.db")


async def _handed_out_then_paused(store, branching_graph):
    await store.save_graph(branching_graph)
    progress = _progress(store)
    enrolled = await _enroll(progress)
    (claimed,) = await store.claim_due_entries(_utc(2024, 3, 4, 10, 0))
    await progress.pause(OWNER, enrolled.enrollment.id)
    return progress, enrolled, claimed


@pytest.mark.asyncio
async def test_late_send_after_resume_cancels_replacement(store, branching_graph):
    progress, enrolled, claimed = await _handed_out_then_paused(store, branching_graph)
    resumed = await progress.resume(OWNER, enrolled.enrollment.id)

    result = await progress.record_outcome(_report(claimed))

    assert result.outcome == "scheduled"
    assert result.enrollment.current_step_id == "nudge"
    intro = {
        e.id: e.status
        for e in await store.list_schedule_entries(OWNER, enrolled.enrollment.id)
        if e.step_id == "intro"
    }
    assert intro == {
        claimed.id: ScheduleStatus.EXECUTED,
        resumed.entry.id: ScheduleStatus.CANCELED,
    }
    live = await store.list_schedule_entries(OWNER, status=ScheduleStatus.SCHEDULED)
    assert [e.step_id for e in live] == ["nudge"]


@pytest.mark.asyncio
async def test_late_send_is_dropped_when_replacement_was_handed_out(store, branching_graph):
    progress, enrolled, claimed = await _handed_out_then_paused(store, branching_graph)
    resumed = await progress.resume(OWNER, enrolled.enrollment.id)
    (replacement,) = await store.claim_due_entries(CLOCK_NOW)
    assert replacement.id == resumed.entry.id

    result = await progress.record_outcome(_report(claimed))

    assert result.outcome == "unchanged"
    first = await store.get_schedule_entry(OWNER, claimed.id)
    assert first.status is ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE
    intro = await store.get_step_instance(OWNER, enrolled.enrollment.id, "intro")
    assert intro.status is StepInstanceStatus.PENDING

    followed = await progress.record_outcome(_report(replacement))
    assert followed.enrollment.current_step_id == "nudge"


@pytest.mark.asyncio
async def test_late_send_while_paused_is_kept_for_resume(store, branching_graph):
    progress, enrolled, claimed = await _handed_out_then_paused(store, branching_graph)

    late = await progress.record_outcome(_report(claimed))

    assert late.outcome == "unchanged"
    assert (await store.get_schedule_entry(OWNER, claimed.id)).status is ScheduleStatus.EXECUTED
    resumed = await progress.resume(OWNER, enrolled.enrollment.id)
    assert resumed.entry.step_id == "nudge"


@pytest.mark.asyncio
async def test_late_failure_for_released_entry_is_dropped(store, branching_graph):
    progress, enrolled, claimed = await _handed_out_then_paused(store, branching_graph)

    late = await progress.record_outcome(_report(claimed, outcome="failed", error="timeout"))

    assert late.outcome == "unchanged"
    entry = await store.get_schedule_entry(OWNER, claimed.id)
    assert entry.status is ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE
    enrollment = await store.get_enrollment(OWNER, enrolled.enrollment.id)
    assert enrollment.status is EnrollmentStatus.PAUSED
