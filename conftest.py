"""Pytest configuration for Cascade Toolkit."""

from datetime import datetime

import pytest

from cascade_toolkit.config import set_config


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "scenario: end-to-end deletion scenario over a seeded store"
    )


@pytest.fixture(autouse=True)
def reset_global_config():
    """Every test starts from a freshly loaded global configuration."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def school_records():
    """Student records referenced through every kind of relationship."""
    return {
        "students": [
            {
                "_id": "s1",
                "personalInfo": {"fullName": "Noa Levi"},
                "is_active": True,
                "enrolled_at": datetime(2023, 9, 1, 8, 30),
            },
            {
                "_id": "s2",
                "personalInfo": {"fullName": "Ari Cohen"},
                "is_active": True,
            },
        ],
        "private_lessons": [
            {"_id": "pl1", "studentId": "s1", "instrument": "violin"},
            {"_id": "pl2", "studentId": "s1", "instrument": "piano"},
            {"_id": "pl3", "studentId": "s2", "instrument": "flute"},
        ],
        "private_attendance": [
            {"_id": "pa1", "studentId": "s1", "date": datetime(2024, 3, 1, 16, 0)},
        ],
        "bagrut": [{"_id": "b1", "studentId": "s1", "finalGrade": 95}],
        "theory_lessons": [
            {
                "_id": "t1",
                "attendees": [
                    {"studentId": "s1", "status": "present"},
                    {"studentId": "s2", "status": "absent"},
                ],
                "studentIds": ["s1", "s2"],
            },
        ],
        "rehearsals": [
            {"_id": "r1", "attendees": [{"studentId": "s1"}, {"studentId": "s2"}]},
        ],
        "orchestras": [
            {"_id": "o1", "name": "Youth Orchestra", "memberIds": ["s1", "s2"]},
        ],
        "teachers": [
            {"_id": "tc1", "assignedStudents": [{"studentId": "s1", "day": "Sunday"}]},
        ],
    }
