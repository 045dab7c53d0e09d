"""Role-based access rules for the API.

Every rule is evaluated per request from the caller, the action and, for
instructor-scoped actions, the course involved. No state is kept between calls.
"""
import logging
from enum import Enum
from typing import Optional

from fastapi import Depends

from auth import get_current_user
from errors import ForbiddenError, UnauthorizedError
from models import Role, User, Course

logger = logging.getLogger(__name__)


class Action(str, Enum):
    list_courses = "list_courses"
    create_course = "create_course"
    list_instructor_courses = "list_instructor_courses"
    list_course_enrollments = "list_course_enrollments"
    list_own_enrollments = "list_own_enrollments"
    create_enrollment = "create_enrollment"
    update_enrollment = "update_enrollment"
    list_own_payments = "list_own_payments"
    create_payment = "create_payment"
    update_payment_status = "update_payment_status"


ANY_ROLE = frozenset(Role)

ALLOWED_ROLES = {
    Action.list_courses: ANY_ROLE,
    Action.create_course: frozenset({Role.faculty, Role.admin}),
    Action.list_instructor_courses: frozenset({Role.faculty}),
    Action.list_course_enrollments: frozenset({Role.faculty}),
    Action.list_own_enrollments: ANY_ROLE,
    Action.create_enrollment: frozenset({Role.student}),
    Action.update_enrollment: frozenset({Role.faculty}),
    Action.list_own_payments: ANY_ROLE,
    Action.create_payment: frozenset({Role.student}),
    Action.update_payment_status: frozenset({Role.admin}),
}

# Actions limited to the instructor of the course involved
INSTRUCTOR_ACTIONS = frozenset({Action.list_course_enrollments, Action.update_enrollment})


def authorize(
    user: Optional[User],
    action: Action,
    course: Optional[Course] = None,
    enforce_ownership: bool = True,
) -> None:
    """Raise UnauthorizedError/ForbiddenError unless ``user`` may perform ``action``"""
    if user is None:
        raise UnauthorizedError()

    if Role(user.role) not in ALLOWED_ROLES[action]:
        logger.warning(f"User {user.id} with role {Role(user.role).value} denied {action.value}")
        raise ForbiddenError()

    if enforce_ownership and action in INSTRUCTOR_ACTIONS and course is not None:
        if course.instructor_id != user.id:
            logger.warning(f"User {user.id} denied {action.value}: not the instructor of course {course.id}")
            raise ForbiddenError("Only the course instructor may do this")


def requires(action: Action):
    """Dependency that authenticates the caller and applies the role rule for ``action``"""
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        authorize(current_user, action)
        return current_user
    return dependency
