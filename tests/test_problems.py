import asyncio
from datetime import datetime, timezone

from conftest import problem_row, store_for
from database import StoreError
from problems import fetch_problem, fetch_problems, search_problems, status_counts
from schemas import Location, Problem
from ui import Navigator, Toaster


def make_problem(problem_id, title="Pothole", description="Large pothole", status="pending", address=None):
    now = datetime.now(timezone.utc)
    return Problem(
        id=problem_id,
        user_id="u1",
        title=title,
        description=description,
        status=status,
        location=Location(lat=1, lng=2, address=address),
        created_at=now,
        updated_at=now,
    )


def test_fetch_problems_newest_first_and_per_user(db):
    db["problems"].insert_one(problem_row("a", created_at="2024-01-01T00:00:00+00:00"))
    db["problems"].insert_one(problem_row("b", created_at="2024-03-01T00:00:00+00:00"))
    db["problems"].insert_one(problem_row("c", user_id="u2", created_at="2024-02-01T00:00:00+00:00"))
    toaster = Toaster()

    everything = asyncio.run(fetch_problems(store_for(db), toaster))
    mine = asyncio.run(fetch_problems(store_for(db), toaster, user_id="u1"))

    assert [p.id for p in everything] == ["b", "c", "a"]
    assert [p.id for p in mine] == ["b", "a"]
    assert toaster.pending == []


def test_fetch_problems_skips_malformed_rows(db):
    db["problems"].insert_one(problem_row("good"))
    broken = problem_row("bad")
    broken["status"] = "archived"
    db["problems"].insert_one(broken)

    problems = asyncio.run(fetch_problems(store_for(db), Toaster()))
    assert [p.id for p in problems] == ["good"]


def test_fetch_problems_store_error(db, monkeypatch):
    store = store_for(db)
    toaster = Toaster()

    async def failing_select(*args, **kwargs):
        raise StoreError(None, "timeout")

    monkeypatch.setattr(store, "select", failing_select)
    assert asyncio.run(fetch_problems(store, toaster)) == []
    assert [(n.title, n.description) for n in toaster.pending] == [("Failed to fetch problems", "timeout")]


def test_fetch_problem_found_and_missing(db):
    db["problems"].insert_one(problem_row("p1"))
    toaster, navigator = Toaster(), Navigator("/home")

    found = asyncio.run(fetch_problem(store_for(db), toaster, navigator, "p1"))
    assert found.id == "p1"
    assert navigator.location == "/home"

    missing = asyncio.run(fetch_problem(store_for(db), toaster, navigator, "nope"))
    assert missing is None
    assert [n.title for n in toaster.pending] == ["Problem not found"]
    assert navigator.location == "/map"


def test_search_matches_title_description_and_address():
    problems = [
        make_problem("1", title="Broken Street Light"),
        make_problem("2", description="Overflowing trash bins"),
        make_problem("3", address="Elm Park"),
        make_problem("4"),
    ]
    assert [p.id for p in search_problems(problems, "street")] == ["1"]
    assert [p.id for p in search_problems(problems, "TRASH")] == ["2"]
    assert [p.id for p in search_problems(problems, "elm")] == ["3"]
    assert len(search_problems(problems, "")) == 4
    assert len(search_problems(problems, None)) == 4


def test_status_counts():
    problems = [
        make_problem("1"),
        make_problem("2", status="in-progress"),
        make_problem("3", status="resolved"),
        make_problem("4", status="resolved"),
    ]
    assert status_counts(problems) == {"pending": 1, "in-progress": 1, "resolved": 2}
    assert status_counts([]) == {"pending": 0, "in-progress": 0, "resolved": 0}
