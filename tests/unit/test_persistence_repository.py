from datetime import datetime, timedelta, timezone

import pytest

import cadencekit.persistence as persistence
from cadencekit.errors import IdempotencyConflict
from cadencekit.persistence import (
    InMemoryCadenceRepository,
    SQLiteCadenceRepository,
    get_repository,
)
from cadencekit.persistence.models import (
    EnrollmentStatus,
    LeadEnrollment,
    LinkedAccount,
    ScheduleEntry,
    ScheduleStatus,
    StepInstance,
    StepInstanceStatus,
    schedule_fingerprint,
)

OWNER = "owner-1"
T0 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        return InMemoryCadenceRepository()
    return SQLiteCadenceRepository(tmp_path / "cadence.db")


def _enrollment(lead_id="lead-1"):
    return LeadEnrollment(
        owner_id=OWNER, cadence_id="c1", lead_id=lead_id, started_at=T0, lead={"first_name": "Ada"}
    )


def _instance(enrollment, step_id="intro", **kwargs):
    return StepInstance(
        owner_id=OWNER,
        enrollment_id=enrollment.id,
        cadence_id="c1",
        step_id=step_id,
        lead_id=enrollment.lead_id,
        node_kind="action",
        **kwargs,
    )


def _entry(instance, scheduled_at=T0, **kwargs):
    return ScheduleEntry(
        owner_id=OWNER,
        cadence_id="c1",
        step_id=instance.step_id,
        lead_id=instance.lead_id,
        enrollment_id=instance.enrollment_id,
        step_instance_id=instance.id,
        fingerprint=schedule_fingerprint("c1", instance.step_id, instance.lead_id),
        scheduled_at=scheduled_at,
        channel="linkedin",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_graph_round_trip(backend, branching_graph):
    await backend.save_graph(branching_graph)
    stored = await backend.get_graph(branching_graph.owner_id, "c1")
    assert stored == branching_graph
    assert await backend.get_graph("someone-else", "c1") is None

    await backend.delete_graph(branching_graph.owner_id, "c1")
    assert await backend.get_graph(branching_graph.owner_id, "c1") is None


@pytest.mark.asyncio
async def test_enrollment_is_unique_per_lead_and_cadence(backend):
    first = await backend.create_enrollment(_enrollment())
    second = await backend.create_enrollment(_enrollment())

    assert second.id == first.id
    assert second.lead == {"first_name": "Ada"}
    assert second.started_at == T0
    assert len(await backend.list_enrollments(OWNER)) == 1
    assert await backend.get_enrollment("someone-else", first.id) is None
    found = await backend.find_enrollment(OWNER, "c1", "lead-1")
    assert found.id == first.id


@pytest.mark.asyncio
async def test_list_enrollments_filters(backend):
    await backend.create_enrollment(_enrollment("a"))
    paused = await backend.create_enrollment(_enrollment("b"))
    paused.status = EnrollmentStatus.PAUSED
    assert await backend.compare_and_swap_enrollment(paused, paused.version)

    listed = await backend.list_enrollments(OWNER, "c1", EnrollmentStatus.PAUSED)
    assert [e.lead_id for e in listed] == ["b"]
    assert await backend.list_enrollments(OWNER, "other") == []


@pytest.mark.asyncio
async def test_compare_and_swap_rejects_stale_version(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    stale = enrollment.model_copy()

    enrollment.current_step_id = "intro"
    assert await backend.compare_and_swap_enrollment(enrollment, 1)
    assert enrollment.version == 2

    stale.current_step_id = "other"
    assert not await backend.compare_and_swap_enrollment(stale, 1)

    stored = await backend.get_enrollment(OWNER, enrollment.id)
    assert stored.current_step_id == "intro"
    assert stored.version == 2


@pytest.mark.asyncio
async def test_step_instance_is_unique_per_enrollment_and_step(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    first = await backend.create_step_instance(_instance(enrollment))
    second = await backend.create_step_instance(_instance(enrollment, day_offset=9))

    assert second.id == first.id
    assert second.day_offset == 0

    first.status = StepInstanceStatus.SENT
    first.inputs = {"replied": False}
    first.result = {"message_id": "m1"}
    await backend.update_step_instance(first)
    stored = await backend.get_step_instance(OWNER, enrollment.id, "intro")
    assert stored.status is StepInstanceStatus.SENT
    assert stored.inputs == {"replied": False}
    assert stored.result == {"message_id": "m1"}
    assert stored.is_terminal

    await backend.create_step_instance(_instance(enrollment, "nudge"))
    steps = await backend.list_step_instances(OWNER, enrollment.id)
    assert [s.step_id for s in steps] == ["intro", "nudge"]


@pytest.mark.asyncio
async def test_live_fingerprint_conflict(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    instance = await backend.create_step_instance(_instance(enrollment))
    first = await backend.insert_schedule_entry(_entry(instance))

    with pytest.raises(IdempotencyConflict) as excinfo:
        await backend.insert_schedule_entry(_entry(instance, T0 + timedelta(hours=1)))

    assert excinfo.value.fingerprint == first.fingerprint
    assert excinfo.value.existing.id == first.id
    live = await backend.get_live_schedule_entry(OWNER, first.fingerprint)
    assert live.id == first.id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status", [ScheduleStatus.CANCELED, ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE]
)
async def test_released_fingerprint_allows_new_entry(backend, status):
    enrollment = await backend.create_enrollment(_enrollment())
    instance = await backend.create_step_instance(_instance(enrollment))
    first = await backend.insert_schedule_entry(_entry(instance))

    assert await backend.update_schedule_status(OWNER, first.id, status)
    second = await backend.insert_schedule_entry(_entry(instance))

    assert second.id != first.id
    live = await backend.get_live_schedule_entry(OWNER, first.fingerprint)
    assert live.id == second.id


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [ScheduleStatus.EXECUTED, ScheduleStatus.FAILED])
async def test_finished_entry_keeps_fingerprint(backend, status):
    enrollment = await backend.create_enrollment(_enrollment())
    instance = await backend.create_step_instance(_instance(enrollment))
    first = await backend.insert_schedule_entry(_entry(instance))
    await backend.update_schedule_status(OWNER, first.id, status)

    with pytest.raises(IdempotencyConflict):
        await backend.insert_schedule_entry(_entry(instance))


@pytest.mark.asyncio
async def test_update_status_with_expected_state(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    instance = await backend.create_step_instance(_instance(enrollment))
    entry = await backend.insert_schedule_entry(_entry(instance))

    assert await backend.update_schedule_status(
        OWNER, entry.id, ScheduleStatus.EXECUTED, expected=ScheduleStatus.SCHEDULED
    )
    assert not await backend.update_schedule_status(
        OWNER, entry.id, ScheduleStatus.EXECUTED, expected=ScheduleStatus.SCHEDULED
    )
    assert not await backend.update_schedule_status("someone-else", entry.id, ScheduleStatus.FAILED)

    await backend.update_schedule_status(OWNER, entry.id, ScheduleStatus.FAILED, last_error="boom")
    stored = await backend.get_schedule_entry(OWNER, entry.id)
    assert stored.status is ScheduleStatus.FAILED
    assert stored.last_error == "boom"


@pytest.mark.asyncio
async def test_transition_moves_only_matching_entries(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    intro = await backend.create_step_instance(_instance(enrollment))
    nudge = await backend.create_step_instance(_instance(enrollment, "nudge"))
    done = await backend.insert_schedule_entry(_entry(intro))
    waiting = await backend.insert_schedule_entry(_entry(nudge, T0 + timedelta(days=2)))
    await backend.update_schedule_status(OWNER, done.id, ScheduleStatus.EXECUTED)

    moved = await backend.transition_schedule_entries(
        OWNER,
        enrollment.id,
        ScheduleStatus.SCHEDULED,
        ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE,
    )

    assert moved == 1
    assert (await backend.get_schedule_entry(OWNER, done.id)).status is ScheduleStatus.EXECUTED
    assert (
        await backend.get_schedule_entry(OWNER, waiting.id)
    ).status is ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE


@pytest.mark.asyncio
async def test_claim_due_entries_once(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    entries = []
    for i, step in enumerate(["a", "b", "c"]):
        instance = await backend.create_step_instance(_instance(enrollment, step))
        entries.append(
            await backend.insert_schedule_entry(_entry(instance, T0 + timedelta(hours=i)))
        )

    now = T0 + timedelta(hours=1)
    claimed = await backend.claim_due_entries(now)

    assert [e.step_id for e in claimed] == ["a", "b"]
    assert all(e.claimed_at == now for e in claimed)
    assert await backend.claim_due_entries(now) == []
    later = await backend.claim_due_entries(T0 + timedelta(days=1), limit=5)
    assert [e.step_id for e in later] == ["c"]


@pytest.mark.asyncio
async def test_claim_respects_limit_and_order(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    for i, step in enumerate(["late", "early"]):
        instance = await backend.create_step_instance(_instance(enrollment, step))
        await backend.insert_schedule_entry(_entry(instance, T0 - timedelta(hours=i)))

    claimed = await backend.claim_due_entries(T0, limit=1)
    assert [e.step_id for e in claimed] == ["early"]


@pytest.mark.asyncio
async def test_expired_claims_are_handed_out_again(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    instance = await backend.create_step_instance(_instance(enrollment))
    entry = await backend.insert_schedule_entry(_entry(instance))
    lease = timedelta(hours=1)

    assert len(await backend.claim_due_entries(T0, lease=lease)) == 1
    assert await backend.claim_due_entries(T0 + timedelta(minutes=30), lease=lease) == []
    assert await backend.claim_due_entries(T0 + timedelta(hours=2)) == []

    reclaimed = await backend.claim_due_entries(T0 + timedelta(hours=1), lease=lease)
    assert [e.id for e in reclaimed] == [entry.id]
    assert reclaimed[0].claimed_at == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_release_claim_only_for_scheduled_entries(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    first = await backend.create_step_instance(_instance(enrollment, "a"))
    second = await backend.create_step_instance(_instance(enrollment, "b"))
    waiting = await backend.insert_schedule_entry(_entry(first))
    done = await backend.insert_schedule_entry(_entry(second))
    await backend.claim_due_entries(T0)
    await backend.update_schedule_status(OWNER, done.id, ScheduleStatus.EXECUTED)

    assert await backend.release_claim(OWNER, waiting.id) is True
    assert await backend.release_claim(OWNER, done.id) is False
    assert (await backend.get_schedule_entry(OWNER, waiting.id)).claimed_at is None
    assert (await backend.get_schedule_entry(OWNER, done.id)).claimed_at == T0
    assert [e.id for e in await backend.claim_due_entries(T0)] == [waiting.id]


@pytest.mark.asyncio
async def test_list_schedule_entries_is_ordered(backend):
    enrollment = await backend.create_enrollment(_enrollment())
    for i, step in enumerate(["x", "y"]):
        instance = await backend.create_step_instance(_instance(enrollment, step))
        await backend.insert_schedule_entry(_entry(instance, T0 - timedelta(hours=i)))

    listed = await backend.list_schedule_entries(OWNER, enrollment.id)
    assert [e.step_id for e in listed] == ["y", "x"]
    assert await backend.list_schedule_entries(OWNER, status=ScheduleStatus.EXECUTED) == []


@pytest.mark.asyncio
async def test_linked_account_upsert(backend):
    assert await backend.get_linked_account(OWNER, "gmail") is None
    await backend.save_linked_account(
        LinkedAccount(owner_id=OWNER, provider="gmail", account_id="a1", connected_at=T0)
    )
    await backend.save_linked_account(
        LinkedAccount(owner_id=OWNER, provider="gmail", account_id="a2", status="disconnected")
    )
    account = await backend.get_linked_account(OWNER, "gmail")
    assert account.account_id == "a2"
    assert account.status == "disconnected"


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "cadence.db"
    repo = SQLiteCadenceRepository(path)
    enrollment = await repo.create_enrollment(_enrollment())

    reopened = SQLiteCadenceRepository(path)
    stored = await reopened.get_enrollment(OWNER, enrollment.id)
    assert stored.lead_id == "lead-1"
    assert stored.status is EnrollmentStatus.ACTIVE


def test_get_repository_defaults_to_memory():
    repo = get_repository()
    assert isinstance(repo, InMemoryCadenceRepository)
    assert get_repository() is repo


def test_get_repository_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CADENCEKIT_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    repo = get_repository()
    assert isinstance(repo, SQLiteCadenceRepository)
    assert persistence._repository_instance is repo


def test_get_repository_rejects_unknown_scheme():
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
