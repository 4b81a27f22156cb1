"""Shared test fixtures for the OPD scheduling core."""

from datetime import date, datetime, time

import pytest

from clock import FrozenClock
from core import OPDCore, create_core
from domain import ScheduleSpec, TimeWindow

DAY = date(2025, 7, 15)
NEXT_DAY = date(2025, 7, 16)


def standard_spec(max_patients: int = 2, slot_duration: int = 30) -> ScheduleSpec:
    """09:00-18:00 with a 13:00-14:00 break."""
    return ScheduleSpec(
        working_hours=TimeWindow(time(9, 0), time(18, 0)),
        break_window=TimeWindow(time(13, 0), time(14, 0)),
        slot_duration=slot_duration,
        max_patients_per_slot=max_patients,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 7, 15, 8, 0))


@pytest.fixture
def core(clock) -> OPDCore:
    """Core wired to a frozen clock, with no schedules published."""
    return create_core(clock=clock, doctor_name=lambda d: f"Dr. {d.upper()}", lock_timeout=5.0)


@pytest.fixture
def published(core) -> OPDCore:
    """Core where doctor d1 works the standard day on DAY and NEXT_DAY."""
    core.schedules.set_schedule("d1", DAY, standard_spec())
    core.schedules.set_schedule("d1", NEXT_DAY, standard_spec())
    return core
