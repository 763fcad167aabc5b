from datetime import timedelta

import pytest

from conftest import utc
from errors import NotFound, ValidationFailed
from extensions import db
from models import LedgerEntry, Student
from skill_countdown import service
from skill_countdown.models import SkillCountdownEntry


@pytest.fixture
def learner(make_student):
    return make_student("lee", points_total=1000)


@pytest.fixture
def add_entry(learner):
    def _add(**overrides):
        values = {
            "participant_id": "lee",
            "label": "Backhand drills",
            "deadline_at": utc(2024, 1, 1),
            "penalty_points": 5,
            "reward_points": 10,
            "assigned_at": utc(2023, 12, 25),
        }
        values.update(overrides)
        entry = SkillCountdownEntry(**values)
        db.session.add(entry)
        db.session.commit()
        return entry.id

    return _add


def _penalty_rows():
    return LedgerEntry.query.filter_by(student_id="lee", category="skill_sprint_penalty").all()


def test_lapsed_periods():
    deadline = utc(2024, 1, 1)
    assert service.lapsed_periods(deadline, None, deadline) == 0
    assert service.lapsed_periods(deadline, None, utc(2024, 1, 10)) == 1
    assert service.lapsed_periods(deadline, 7, deadline + timedelta(seconds=1)) == 1
    assert service.lapsed_periods(deadline, 7, deadline + timedelta(days=7, seconds=1)) == 2


def test_one_shot_deadline_charges_exactly_once(add_entry):
    add_entry()

    first = service.process_penalties("lee", "coach-1", now=utc(2024, 1, 10))
    second = service.process_penalties("lee", "coach-1", now=utc(2024, 1, 10))
    later = service.process_penalties("lee", "coach-1", now=utc(2024, 2, 10))

    assert [item["lapses_charged"] for item in first["penalties_applied"]] == [1]
    assert second["penalties_applied"] == []
    assert later["penalties_applied"] == []
    rows = _penalty_rows()
    assert [row.points for row in rows] == [-5]
    assert rows[0].note == "Skill Sprint missed: Backhand drills"
    assert db.session.get(Student, "lee").points_total == 995


def test_recurring_deadline_charges_each_missed_period(add_entry):
    entry_id = add_entry(period_days=7)

    service.process_penalties("lee", now=utc(2024, 1, 16))
    assert len(_penalty_rows()) == 3

    service.process_penalties("lee", now=utc(2024, 1, 16, 12))
    assert len(_penalty_rows()) == 3

    service.process_penalties("lee", now=utc(2024, 1, 22, 0, 0, 1))
    assert len(_penalty_rows()) == 4
    assert db.session.get(SkillCountdownEntry, entry_id).penalty_applied_count == 4


def test_nothing_charged_before_deadline(add_entry):
    entry_id = add_entry()

    result = service.process_penalties("lee", now=utc(2023, 12, 31))

    assert result["penalties_applied"] == []
    entry = db.session.get(SkillCountdownEntry, entry_id)
    assert entry.penalty_applied_count == 0
    assert entry.last_checked_at is not None


def test_completed_entries_are_not_penalised(add_entry):
    add_entry(completed_at=utc(2023, 12, 30))

    assert service.process_penalties("lee", now=utc(2024, 1, 10))["penalties_applied"] == []


def test_lost_compare_and_set_skips_the_ledger_write(add_entry, monkeypatch):
    entry_id = add_entry()
    real_open_entries = service._open_entries

    def stale_entries(participant_id):
        entries = real_open_entries(participant_id)
        # Another processor already advanced the counter after this read.
        db.session.execute(
            SkillCountdownEntry.__table__.update()
            .where(SkillCountdownEntry.__table__.c.id == entry_id)
            .values(penalty_applied_count=1)
        )
        return entries

    monkeypatch.setattr(service, "_open_entries", stale_entries)
    result = service.process_penalties("lee", now=utc(2024, 1, 10))

    assert result["penalties_applied"] == []
    assert _penalty_rows() == []


def test_snapshot_statuses_and_summary(add_entry):
    add_entry(label="Serve", deadline_at=utc(2024, 1, 1))
    add_entry(label="Volley", deadline_at=utc(2024, 1, 20))
    add_entry(label="Footwork", deadline_at=utc(2024, 1, 5), completed_at=utc(2024, 1, 4))
    service.process_penalties("lee", now=utc(2024, 1, 10))

    snapshot = service.fetch_snapshot("lee", now=utc(2024, 1, 10))

    statuses = {row["label"]: row["status"] for row in snapshot["rows"]}
    assert statuses == {"Serve": "lapsed", "Footwork": "resolved", "Volley": "on_track"}
    summary = snapshot["summary"]
    assert summary["active_count"] == 2
    assert summary["lapsed_count"] == 1
    assert summary["resolved_count"] == 1
    assert summary["next_deadline_at"] == "2024-01-20T00:00:00+00:00"
    assert summary["points_lost"] == 5


def test_assign_clamps_penalty_to_share_of_points(make_student):
    make_student("low", points_total=100)

    result = service.assign("low", label="Lob", deadline_at="2024-02-01T00:00:00Z", penalty_points=20)

    assert result["row"]["penalty_points"] == 8
    assert result["row"]["reward_points"] == 10


def test_assign_validation(make_student):
    make_student("low", points_total=100)
    with pytest.raises(ValidationFailed):
        service.assign("low", label="", deadline_at="2024-02-01T00:00:00Z")
    with pytest.raises(ValidationFailed):
        service.assign("low", label="Lob", deadline_at="soon")
    with pytest.raises(ValidationFailed):
        service.assign("low", label="Lob", deadline_at="2024-02-01T00:00:00Z", source_type="homework")
    with pytest.raises(NotFound):
        service.assign("ghost", label="Lob", deadline_at="2024-02-01T00:00:00Z")


def test_prize_decays_daily_and_vanishes_a_day_after_due():
    assigned, due = utc(2024, 1, 1), utc(2024, 1, 5)
    assert service.prize_now(10, assigned, due, utc(2024, 1, 1, 12)) == 10
    assert service.prize_now(10, assigned, due, utc(2024, 1, 3, 1)) == 5
    assert service.prize_now(10, assigned, due, utc(2024, 1, 5, 12)) == 2
    assert service.prize_now(10, assigned, due, utc(2024, 1, 6)) == 0
    assert service.prize_now(0, assigned, due, utc(2024, 1, 2)) == 0


def test_complete_pays_current_prize_once(add_entry):
    entry_id = add_entry(assigned_at=utc(2024, 1, 1), deadline_at=utc(2024, 1, 5))

    first = service.complete(entry_id, completed_by="lee", now=utc(2024, 1, 3, 1))
    second = service.complete(entry_id, completed_by="lee", now=utc(2024, 1, 3, 2))

    assert first["reward_points"] == 5
    assert second == {"ok": True, "already_completed": True}
    rewards = LedgerEntry.query.filter_by(category="skill_sprint_complete").all()
    assert [row.points for row in rewards] == [5]


def test_complete_rejects_disabled_entries(add_entry):
    entry_id = add_entry(enabled=False)
    with pytest.raises(ValidationFailed):
        service.complete(entry_id, now=utc(2024, 1, 3))
    with pytest.raises(NotFound):
        service.complete("missing", now=utc(2024, 1, 3))


def test_process_all_covers_every_student(add_entry, make_student):
    make_student("max", points_total=500)
    add_entry()
    add_entry(participant_id="max")

    result = service.process_all("admin-1", now=utc(2024, 1, 10))

    assert result["students_checked"] == 2
    assert len(result["penalties_applied"]) == 2


@pytest.mark.parametrize(
    "overrides",
    [
        {"penalty_points": float("inf")},
        {"reward_points": "1e400"},
        {"reward_points": 2**40},
        {"period_days": float("inf")},
        {"period_days": 10**6},
        {"penalty_points": float("nan")},
    ],
)
def test_assign_rejects_out_of_range_numbers(make_student, overrides):
    make_student("low", points_total=100)
    with pytest.raises(ValidationFailed):
        service.assign("low", label="Lob", deadline_at="2024-02-01T00:00:00Z", **overrides)
    assert SkillCountdownEntry.query.count() == 0
