"""Pytest configuration and fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient

from app.dependencies import get_store
from app.main import app
from src.reassignment_engine import (
    Actor,
    Bus,
    BusLoad,
    BusShift,
    Driver,
    MemoryDocumentStore,
    ReassignmentEngine,
    Route,
    Snapshot,
    Stop,
    Student,
    StudentShift,
)
from src.reassignment_engine.snapshot import save_snapshot


def make_stops(*ids: str) -> list[Stop]:
    return [Stop(id=stop_id, name=f"Stop {stop_id}", sequence=i) for i, stop_id in enumerate(ids)]


def campus_snapshot() -> Snapshot:
    """
    A small campus.

    bus_1 (drv_1, Route-1)   50 seats, Both,    10/5
    bus_2 (drv_2, Route-2)   50 seats, Both,    48/30
    bus_3 (drv_3, Route-1)   40 seats, Morning, 20/0
    bus_4 (no driver, Route-3) 50 seats, Both,  0/0
    drv_4 is reserved.
    """
    route_1 = Route(id="route_1", alias="Route-1", name="North Loop", stops=make_stops("A", "B", "C"))
    route_2 = Route(id="route_2", alias="Route-2", name="South Loop", stops=make_stops("C", "D", "E"))
    route_3 = Route(id="route_3", alias="Route-3", name="East Line", stops=make_stops("A", "F"))

    buses = [
        Bus(id="bus_1", bus_number="AS-01-1001", capacity=50, shift=BusShift.BOTH,
            load=BusLoad(morning_count=10, evening_count=5),
            assigned_driver_id="drv_1", route_id="route_1", stops=route_1.stops),
        Bus(id="bus_2", bus_number="AS-01-1002", capacity=50, shift=BusShift.BOTH,
            load=BusLoad(morning_count=48, evening_count=30),
            assigned_driver_id="drv_2", route_id="route_2", stops=route_2.stops),
        Bus(id="bus_3", bus_number="AS-01-1003", capacity=40, shift=BusShift.MORNING,
            load=BusLoad(morning_count=20, evening_count=0),
            assigned_driver_id="drv_3", route_id="route_1", stops=route_1.stops),
        Bus(id="bus_4", bus_number="AS-01-1004", capacity=50, shift=BusShift.BOTH,
            route_id="route_3", stops=route_3.stops),
    ]
    drivers = [
        Driver(id="drv_1", name="Anil Das", employee_code="DB-01", bus_id="bus_1", route_id="route_1"),
        Driver(id="drv_2", name="Bikash Roy", employee_code="DB-02", bus_id="bus_2", route_id="route_2"),
        Driver(id="drv_3", name="Chandan Bora", employee_code="DB-10", bus_id="bus_3", route_id="route_1"),
        Driver(id="drv_4", name="Dipen Kalita", employee_code="DB-03"),
    ]
    students = [
        Student(id="stu_1", name="Student One", bus_id="bus_1", route_id="route_1",
                stop_id="C", shift=StudentShift.MORNING),
        Student(id="stu_2", name="Student Two", bus_id="bus_1", route_id="route_1",
                stop_id="C", shift=StudentShift.MORNING),
        Student(id="stu_3", name="Student Three", bus_id="bus_1", route_id="route_1",
                stop_id="C", shift=StudentShift.MORNING),
        Student(id="stu_4", name="Student Four", bus_id="bus_1", route_id="route_1",
                stop_id="A", shift=StudentShift.EVENING),
        Student(id="stu_5", name="Student Five", bus_id="bus_1", route_id="route_1",
                stop_id="B", shift=StudentShift.MORNING, status="inactive"),
    ]
    return Snapshot(buses=buses, drivers=drivers, routes=[route_1, route_2, route_3], students=students)


@pytest.fixture
def snapshot() -> Snapshot:
    return campus_snapshot()


@pytest.fixture
def actor() -> Actor:
    return Actor(id="admin_uid_12345678", name="Transport Admin", role="admin")


@pytest.fixture
async def store(snapshot):
    """In-memory store seeded with the campus snapshot."""
    memory_store = MemoryDocumentStore()
    await save_snapshot(memory_store, snapshot)
    return memory_store


@pytest.fixture
def engine(store) -> ReassignmentEngine:
    return ReassignmentEngine(store)


@pytest.fixture
async def client(store):
    """Async test client fixture."""
    app.dependency_overrides[get_store] = lambda: store
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
