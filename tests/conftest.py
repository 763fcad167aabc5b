from datetime import datetime, timezone

import pytest

from app import create_app
from extensions import db
from models import GiftItem, LedgerEntry, ParentStudentLink, Student, UserRole


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "USE_SUPABASE": False,
            "SUPABASE_CLIENT": None,
            "LEDGER_REFRESH_URL": None,
            "CYCLE_POLICY": "rollover",
            "CYCLE_TIMEZONE": "America/New_York",
            "CYCLE_ROLLOVER_HOUR": 6,
            "CYCLE_ROLLOVER_MINUTE": 0,
            "CYCLE_LABEL": "start",
        }
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def make_student(app):
    def _make(student_id: str, name: str = None, points_total: int = 0, active: bool = True) -> Student:
        student = Student(
            id=student_id,
            name=name or student_id.title(),
            points_total=points_total,
            lifetime_points=max(points_total, 0),
            active=active,
        )
        db.session.add(student)
        db.session.commit()
        return student

    return _make


@pytest.fixture
def add_points(app):
    def _add(student_id: str, points: int, at: datetime, category: str = "general") -> LedgerEntry:
        entry = LedgerEntry(student_id=student_id, points=points, category=category, created_at=at)
        db.session.add(entry)
        db.session.commit()
        return entry

    return _add


@pytest.fixture
def grant_role(app):
    def _grant(user_id: str, role: str, student_id: str = None) -> UserRole:
        grant = UserRole(user_id=user_id, role=role, student_id=student_id)
        db.session.add(grant)
        db.session.commit()
        return grant

    return _grant


@pytest.fixture
def link_parent(app):
    def _link(parent_user_id: str, student_id: str) -> ParentStudentLink:
        link = ParentStudentLink(parent_user_id=parent_user_id, student_id=student_id)
        db.session.add(link)
        db.session.commit()
        return link

    return _link


@pytest.fixture
def gift_item(app):
    item = GiftItem(id="sticker", name="Sticker Pack", enabled=True)
    db.session.add(item)
    db.session.commit()
    return item


def login(client, user_id: str) -> None:
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
