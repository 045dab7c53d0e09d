import pytest

from errors import ForbiddenError, UnauthorizedError
from models import User, Course, Role
from policy import Action, authorize


def make_user(user_id, role):
    return User(id=user_id, username=f"user{user_id}", password="x", role=role,
                full_name=f"User {user_id}", email=f"user{user_id}@example.edu")


STUDENT = make_user(1, Role.student)
FACULTY = make_user(2, Role.faculty)
OTHER_FACULTY = make_user(3, Role.faculty)
ADMIN = make_user(4, Role.admin)

COURSE = Course(id=10, code="CS101", name="Intro", description="Intro course", credits=3, instructor_id=FACULTY.id)


@pytest.mark.parametrize("action", list(Action))
def test_unauthenticated_caller_is_rejected(action):
    with pytest.raises(UnauthorizedError):
        authorize(None, action)


@pytest.mark.parametrize(
    "action,allowed",
    [
        (Action.list_courses, {Role.student, Role.faculty, Role.admin}),
        (Action.create_course, {Role.faculty, Role.admin}),
        (Action.list_instructor_courses, {Role.faculty}),
        (Action.list_course_enrollments, {Role.faculty}),
        (Action.list_own_enrollments, {Role.student, Role.faculty, Role.admin}),
        (Action.create_enrollment, {Role.student}),
        (Action.update_enrollment, {Role.faculty}),
        (Action.list_own_payments, {Role.student, Role.faculty, Role.admin}),
        (Action.create_payment, {Role.student}),
        (Action.update_payment_status, {Role.admin}),
    ],
)
def test_role_rules(action, allowed):
    for user in (STUDENT, FACULTY, ADMIN):
        if user.role in allowed:
            authorize(user, action)
        else:
            with pytest.raises(ForbiddenError):
                authorize(user, action)


def test_forbidden_is_distinct_from_unauthorized():
    with pytest.raises(ForbiddenError):
        authorize(STUDENT, Action.create_course)


@pytest.mark.parametrize("action", [Action.list_course_enrollments, Action.update_enrollment])
def test_instructor_ownership(action):
    """Test only the course's instructor may view or grade its enrollments"""
    authorize(FACULTY, action, COURSE)
    with pytest.raises(ForbiddenError):
        authorize(OTHER_FACULTY, action, COURSE)


def test_instructor_ownership_can_be_disabled():
    authorize(OTHER_FACULTY, Action.update_enrollment, COURSE, enforce_ownership=False)
    # the role rule still applies
    with pytest.raises(ForbiddenError):
        authorize(STUDENT, Action.update_enrollment, COURSE, enforce_ownership=False)
