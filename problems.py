import logging
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from database import DataStore, StoreError
from schemas import STATUSES, Problem
from ui import Navigator, Toaster

logger = logging.getLogger(__name__)


def _parse(rows: Iterable[dict]) -> List[Problem]:
    problems = []
    for row in rows:
        try:
            problems.append(Problem.model_validate(row))
        except ValidationError as e:
            logger.warning("Skipping malformed problem row %s: %s", row.get("id"), e)
    return problems


async def fetch_problems(store: DataStore, toaster: Toaster, user_id: Optional[str] = None) -> List[Problem]:
    """Newest first; only `user_id`'s problems when given."""
    filters = {"user_id": user_id} if user_id else {}
    try:
        rows = await store.select("problems", order_by="created_at", ascending=False, **filters)
    except StoreError as e:
        logger.error("Failed to fetch problems: %s", e.message)
        toaster.error("Failed to fetch problems", e.message)
        return []
    except Exception as e:
        logger.exception("Failed to fetch problems")
        toaster.error("An error occurred", str(e) or None)
        return []
    return _parse(rows)


async def fetch_problem(
    store: DataStore, toaster: Toaster, navigator: Navigator, problem_id: str
) -> Optional[Problem]:
    try:
        row = await store.select_single("problems", id=problem_id)
        return Problem.model_validate(row)
    except (StoreError, ValidationError) as e:
        logger.info("Problem %s unavailable: %s", problem_id, e)
    except Exception:
        logger.exception("Error loading problem %s", problem_id)
    toaster.error("Problem not found")
    navigator.navigate("/map")
    return None


def search_problems(problems: Iterable[Problem], query: Optional[str]) -> List[Problem]:
    if not query:
        return list(problems)
    q = query.lower()
    return [
        p
        for p in problems
        if q in p.title.lower()
        or q in p.description.lower()
        or (p.location.address and q in p.location.address.lower())
    ]


def status_counts(problems: Iterable[Problem]) -> Dict[str, int]:
    counts = {status: 0 for status in STATUSES}
    for p in problems:
        counts[p.status] += 1
    return counts
