import logging
import uuid
from datetime import datetime, timezone
from typing import Union

from auth_context import AuthContext
from database import DataStore, StoreError
from schemas import NO_LOCATION, Problem, ReportProblemData
from ui import Toaster

logger = logging.getLogger(__name__)


class ProblemReporter:
    """Turns a validated report form into a `problems` row for the signed-in user.

    `report_problem` never raises: it returns the stored Problem on success and
    False otherwise, with one notification either way. `is_submitting` is true
    only while a submission is in flight.
    """

    def __init__(self, auth_context: AuthContext, store: DataStore, toaster: Toaster):
        self.auth_context = auth_context
        self.store = store
        self.toaster = toaster
        self.is_submitting = False

    async def report_problem(self, data: ReportProblemData) -> Union[Problem, bool]:
        user = self.auth_context.user
        if user is None:
            self.toaster.error(
                "You must be logged in to report a problem",
                "Please sign in or create an account to continue",
            )
            return False

        self.is_submitting = True
        try:
            logger.info("Reporting problem with user ID: %s", user.id)
            now = datetime.now(timezone.utc).isoformat()
            location = data.location or NO_LOCATION
            row = {
                "id": str(uuid.uuid4()),
                "user_id": user.id,
                "title": data.title,
                "description": data.description,
                "category": data.category,
                "location": location.model_dump(),
                "image_url": data.image_url,
                "status": "pending",
                "upvotes": 0,
                "created_at": now,
                "updated_at": now,
            }

            inserted = await self.store.insert("problems", row)
            problem = Problem.model_validate(inserted)
        except StoreError as e:
            logger.error("Error reporting problem: %s", e.message)
            self.toaster.error("Failed to report problem", e.message)
            return False
        except Exception as e:
            logger.exception("Unexpected error while reporting problem")
            self.toaster.error("An unexpected error occurred", str(e) or None)
            return False
        finally:
            self.is_submitting = False

        logger.info("Problem reported successfully: %s", problem.id)
        self.toaster.success("Problem reported successfully", "Thank you for helping improve your community!")
        return problem
