from datetime import date, timedelta

import pytest

from conftest import utc
from cycle_keys import ensure_utc
from errors import NotFound, ValidationFailed
from extensions import db
from gifts import schedule, service
from gifts.models import GiftAutoAssignmentRule, GiftAutoAssignmentRun
from models import GiftItem, GroupMembership, StudentGift


def test_interval_occurrences_include_anchor():
    spec = schedule.ScheduleSpec(kind="interval", anchor_at=utc(2024, 1, 1), interval_days=7)

    due = schedule.occurrences_between(spec, None, utc(2024, 1, 8, 0, 0, 1))
    assert [schedule.occurrence_id(instant) for instant in due] == [
        "2024-01-01T00:00:00Z",
        "2024-01-08T00:00:00Z",
    ]
    assert schedule.occurrences_between(spec, utc(2024, 1, 8), utc(2024, 1, 8, 12)) == []


def test_weekly_occurrences_use_local_time():
    spec = schedule.ScheduleSpec(
        kind="weekly",
        anchor_at=utc(2024, 1, 1),
        day_codes=("W", "m"),
        time_local="16:00",
        timezone_name="America/New_York",
    )
    due = schedule.occurrences_between(spec, None, utc(2024, 1, 4))
    assert due == [utc(2024, 1, 1, 21, 0), utc(2024, 1, 3, 21, 0)]
    assert spec.day_codes == ("m", "w")


def test_once_and_active_window():
    once = schedule.ScheduleSpec(kind="once", anchor_at=utc(2024, 2, 1, 15))
    assert schedule.occurrences_between(once, None, utc(2024, 3, 1)) == [utc(2024, 2, 1, 15)]
    assert schedule.occurrences_between(once, utc(2024, 2, 1, 15), utc(2024, 3, 1)) == []

    windowed = schedule.ScheduleSpec(
        kind="interval",
        anchor_at=utc(2024, 1, 1, 12),
        interval_days=1,
        active_from=date(2024, 1, 3),
        active_until=date(2024, 1, 4),
    )
    due = schedule.occurrences_between(windowed, None, utc(2024, 1, 10))
    assert due == [utc(2024, 1, 3, 12), utc(2024, 1, 4, 12)]


def test_invalid_schedules_are_rejected():
    with pytest.raises(ValueError):
        schedule.ScheduleSpec(kind="interval", anchor_at=utc(2024, 1, 1), interval_days=0)
    with pytest.raises(ValueError):
        schedule.ScheduleSpec(kind="weekly", anchor_at=utc(2024, 1, 1), day_codes=("xx",), time_local="10:00")
    with pytest.raises(ValueError):
        schedule.ScheduleSpec(kind="weekly", anchor_at=utc(2024, 1, 1), day_codes=("m",), time_local="noon")
    with pytest.raises(ValueError):
        schedule.ScheduleSpec(kind="hourly", anchor_at=utc(2024, 1, 1))


@pytest.fixture
def students(make_student):
    for sid in ("amy", "bo", "cy"):
        make_student(sid)


@pytest.fixture
def weekly_rule(students, gift_item):
    result = service.create_rule(
        name="Weekly sticker",
        gift_item_id=gift_item.id,
        schedule_kind="interval",
        anchor_at="2024-01-01T00:00:00Z",
        interval_days=7,
        target_selector={"kind": "explicit", "student_ids": ["amy", "bo"]},
    )
    return result["rule"]["id"]


def test_missed_anchor_fires_only_newest_occurrence(weekly_rule):
    result = service.run_due(utc(2024, 1, 8, 0, 0, 1))

    assert [fired["occurrence_id"] for fired in result["fired"]] == ["2024-01-08T00:00:00Z"]
    assert [s["occurrence_id"] for s in result["skipped_occurrences"]] == ["2024-01-01T00:00:00Z"]
    assert StudentGift.query.count() == 2

    rule = db.session.get(GiftAutoAssignmentRule, weekly_rule)
    assert rule.last_fired_occurrence == "2024-01-08T00:00:00Z"


def test_same_now_twice_fires_once(weekly_rule):
    now = utc(2024, 1, 8, 0, 0, 1)
    service.run_due(now)
    second = service.run_due(now)

    assert second["fired"] == []
    assert StudentGift.query.count() == 2
    assert GiftAutoAssignmentRun.query.count() == 2


def test_nothing_due_later_the_same_day(weekly_rule):
    service.run_due(utc(2024, 1, 8, 0, 0, 1))
    later = service.run_due(utc(2024, 1, 8, 12, 0))

    assert later["fired"] == []
    assert later["skipped_occurrences"] == []


def test_catch_up_fires_every_missed_occurrence_oldest_first(weekly_rule):
    rule = db.session.get(GiftAutoAssignmentRule, weekly_rule)
    rule.catch_up = True
    db.session.commit()

    result = service.run_due(utc(2024, 1, 15, 1, 0))

    assert [fired["occurrence_id"] for fired in result["fired"]] == [
        "2024-01-01T00:00:00Z",
        "2024-01-08T00:00:00Z",
        "2024-01-15T00:00:00Z",
    ]
    assert StudentGift.query.count() == 6


def test_catch_up_is_capped_per_run(app, weekly_rule):
    app.config["GIFT_MAX_OCCURRENCES_PER_RUN"] = 2
    rule = db.session.get(GiftAutoAssignmentRule, weekly_rule)
    rule.catch_up = True
    db.session.commit()

    first = service.run_due(utc(2024, 1, 15, 1, 0))
    second = service.run_due(utc(2024, 1, 15, 1, 0))

    assert len(first["fired"]) == 2
    assert [fired["occurrence_id"] for fired in second["fired"]] == ["2024-01-15T00:00:00Z"]


def test_dry_run_writes_nothing(weekly_rule):
    result = service.run_due(utc(2024, 1, 8, 0, 0, 1), dry_run=True)

    assert result["dry_run"] is True
    assert [grant["student_id"] for grant in result["fired"][0]["grants"]] == ["amy", "bo"]
    assert StudentGift.query.count() == 0
    assert GiftAutoAssignmentRun.query.count() == 0
    assert db.session.get(GiftAutoAssignmentRule, weekly_rule).last_fired_occurrence is None


def test_granted_gifts_expire_after_configured_days(weekly_rule):
    service.run_due(utc(2024, 1, 8, 0, 0, 1))

    gift = StudentGift.query.filter_by(student_id="amy").one()
    assert ensure_utc(gift.expires_at) == utc(2024, 1, 8) + timedelta(days=3)
    assert gift.note == "Auto gift: Weekly sticker"
    assert gift.source_occurrence == "2024-01-08T00:00:00Z"


def test_skipped_student_is_left_out_of_the_occurrence(weekly_rule):
    skip = service.skip_occurrence(weekly_rule, "amy", "2024-01-15T00:00:00Z", now=utc(2024, 1, 10))
    assert skip["already_skipped"] is False
    again = service.skip_occurrence(weekly_rule, "amy", "2024-01-15T00:00:00Z", now=utc(2024, 1, 10))
    assert again["already_skipped"] is True

    service.run_due(utc(2024, 1, 8, 0, 0, 1))
    result = service.run_due(utc(2024, 1, 15, 0, 0, 1))

    assert [grant["student_id"] for grant in result["fired"][0]["grants"]] == ["bo"]
    assert result["fired"][0]["skipped_students"] == ["amy"]
    assert StudentGift.query.filter_by(source_occurrence="2024-01-15T00:00:00Z").count() == 1


def test_skip_requires_a_future_scheduled_occurrence(weekly_rule):
    with pytest.raises(ValidationFailed):
        service.skip_occurrence(weekly_rule, "amy", "2024-01-08T00:00:00Z", now=utc(2024, 1, 10))
    with pytest.raises(ValidationFailed):
        service.skip_occurrence(weekly_rule, "amy", "2024-01-16T00:00:00Z", now=utc(2024, 1, 10))
    with pytest.raises(ValidationFailed):
        service.skip_occurrence(weekly_rule, "amy", "next tuesday", now=utc(2024, 1, 10))
    with pytest.raises(NotFound):
        service.skip_occurrence("missing", "amy", "2024-01-15T00:00:00Z", now=utc(2024, 1, 10))


def test_lost_watermark_race_rolls_back_the_occurrence(weekly_rule):
    rule = db.session.get(GiftAutoAssignmentRule, weekly_rule)

    with pytest.raises(service.OccurrenceAlreadyFired):
        service._fire_occurrence(
            rule,
            utc(2024, 1, 8),
            "2024-01-08T00:00:00Z",
            ["amy", "bo"],
            "2024-01-01T00:00:00Z",
            utc(2024, 1, 8, 0, 0, 1),
            None,
        )

    assert StudentGift.query.count() == 0
    assert GiftAutoAssignmentRun.query.count() == 0


def test_group_targets_honour_membership_days(students, gift_item):
    db.session.add_all(
        [
            GroupMembership(group_key="camp", student_id="amy", day_codes=["m"]),
            GroupMembership(group_key="camp", student_id="bo", day_codes=["t"]),
            GroupMembership(group_key="camp", student_id="cy", day_codes=[]),
        ]
    )
    db.session.commit()
    service.create_rule(
        name="Monday camp treat",
        gift_item_id=gift_item.id,
        schedule_kind="weekly",
        anchor_at="2024-01-01T00:00:00Z",
        day_codes=["m"],
        time_local="09:00",
        target_selector={"kind": "group", "group": "camp"},
    )

    result = service.run_due(utc(2024, 1, 1, 15, 0))

    assert [grant["student_id"] for grant in result["fired"][0]["grants"]] == ["amy", "cy"]


def test_all_active_targets_skip_inactive_students(students, gift_item, make_student):
    make_student("zed", active=False)
    service.create_rule(
        name="Launch day",
        gift_item_id=gift_item.id,
        schedule_kind="once",
        anchor_at="2024-02-01T12:00:00Z",
        target_selector={"kind": "all_active"},
    )

    result = service.run_due(utc(2024, 2, 1, 12, 0))

    assert [grant["student_id"] for grant in result["fired"][0]["grants"]] == ["amy", "bo", "cy"]


def test_create_rule_validates_input(students, gift_item):
    with pytest.raises(ValidationFailed):
        service.create_rule(
            name="Bad",
            gift_item_id=gift_item.id,
            schedule_kind="fortnightly",
            anchor_at="2024-01-01T00:00:00Z",
            target_selector={"kind": "all_active"},
        )
    with pytest.raises(ValidationFailed):
        service.create_rule(
            name="No ids",
            gift_item_id=gift_item.id,
            schedule_kind="once",
            anchor_at="2024-01-01T00:00:00Z",
            target_selector={"kind": "explicit"},
        )
    with pytest.raises(NotFound):
        service.create_rule(
            name="No item",
            gift_item_id="missing",
            schedule_kind="once",
            anchor_at="2024-01-01T00:00:00Z",
            target_selector={"kind": "all_active"},
        )


def test_gift_item_vanishing_mid_run_rolls_back_and_other_rules_still_fire(weekly_rule, monkeypatch):
    db.session.add(GiftItem(id="badge", name="Badge", enabled=True))
    db.session.commit()
    badge_rule = service.create_rule(
        name="Weekly badge",
        gift_item_id="badge",
        schedule_kind="interval",
        anchor_at="2024-01-01T00:00:00Z",
        interval_days=7,
        target_selector={"kind": "explicit", "student_ids": ["cy"]},
    )["rule"]["id"]
    real_grant = service.grant_gift
    sticker_calls = {"count": 0}

    def grant_until_sticker_disappears(student_id, gift_item_id, **kwargs):
        if gift_item_id == "sticker":
            sticker_calls["count"] += 1
            if sticker_calls["count"] == 2:
                raise NotFound("Gift item sticker not found.")
        return real_grant(student_id, gift_item_id, **kwargs)

    monkeypatch.setattr(service, "grant_gift", grant_until_sticker_disappears)
    result = service.run_due(utc(2024, 1, 8, 0, 0, 1))

    assert [fired["rule_id"] for fired in result["fired"]] == [badge_rule]
    assert [error["rule_id"] for error in result["errors"]] == [weekly_rule]
    assert StudentGift.query.filter_by(gift_item_id="sticker").count() == 0
    assert GiftAutoAssignmentRun.query.filter_by(rule_id=weekly_rule).count() == 0
    assert db.session.get(GiftAutoAssignmentRule, weekly_rule).last_fired_occurrence is None
    assert [gift.student_id for gift in StudentGift.query.filter_by(gift_item_id="badge")] == ["cy"]
