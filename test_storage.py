from decimal import Decimal

import pytest

from errors import ConflictError, NotFoundError
from models import User, Course, Enrollment, Payment, Role, Grade, PaymentStatus
from database import create_db_engine, create_db_and_tables
from storage import MemoryStorage, DatabaseStorage, next_timestamp

pytestmark = pytest.mark.anyio


async def make_user(storage, username, role=Role.student):
    return await storage.create_user(
        User(
            username=username,
            password="hashed-password",
            role=role,
            full_name=username.title(),
            email=f"{username}@example.edu",
        )
    )


async def make_course(storage, code, instructor_id):
    return await storage.create_course(
        Course(code=code, name=f"{code} course", description="Course description", credits=3,
               instructor_id=instructor_id)
    )


# ============= USER TESTS =============

async def test_create_user_assigns_id(storage):
    """Test creating users assigns distinct positive ids"""
    alice = await make_user(storage, "alice")
    bob = await make_user(storage, "bob")
    assert alice.id >= 1
    assert bob.id != alice.id

    fetched = await storage.get_user(alice.id)
    assert fetched.username == "alice"
    assert Role(fetched.role) == Role.student


async def test_get_user_by_username(storage):
    await make_user(storage, "alice")
    user = await storage.get_user_by_username("alice")
    assert user is not None
    assert user.username == "alice"
    assert await storage.get_user_by_username("nobody") is None


async def test_get_user_not_found(storage):
    assert await storage.get_user(9999) is None


async def test_create_user_duplicate_username(storage):
    """Test a second user with the same username is rejected"""
    await make_user(storage, "alice")
    with pytest.raises(ConflictError):
        await make_user(storage, "alice", Role.faculty)


# ============= COURSE TESTS =============

async def test_create_course(storage):
    faculty = await make_user(storage, "prof", Role.faculty)
    course = await make_course(storage, "CS101", faculty.id)
    assert course.id >= 1
    assert course.instructor_id == faculty.id
    assert (await storage.get_course(course.id)).code == "CS101"


async def test_create_course_duplicate_code(storage):
    faculty = await make_user(storage, "prof", Role.faculty)
    await make_course(storage, "CS101", faculty.id)
    with pytest.raises(ConflictError):
        await make_course(storage, "CS101", faculty.id)
    assert len(await storage.get_all_courses()) == 1


async def test_create_course_unknown_instructor(storage):
    with pytest.raises(NotFoundError):
        await make_course(storage, "CS101", 9999)
    assert await storage.get_all_courses() == []


async def test_get_courses_by_instructor(storage):
    """Test filtering courses by instructor"""
    prof_a = await make_user(storage, "prof_a", Role.faculty)
    prof_b = await make_user(storage, "prof_b", Role.faculty)
    await make_course(storage, "CS101", prof_a.id)
    await make_course(storage, "CS102", prof_a.id)
    await make_course(storage, "MA101", prof_b.id)

    assert len(await storage.get_all_courses()) == 3
    codes = {c.code for c in await storage.get_courses_by_instructor(prof_a.id)}
    assert codes == {"CS101", "CS102"}
    assert await storage.get_courses_by_instructor(9999) == []


# ============= ENROLLMENT TESTS =============

async def test_create_enrollment_defaults(storage):
    """Test a new enrollment always starts in progress with no attendance"""
    faculty = await make_user(storage, "prof", Role.faculty)
    student = await make_user(storage, "alice")
    course = await make_course(storage, "CS101", faculty.id)

    enrollment = await storage.create_enrollment(
        Enrollment(student_id=student.id, course_id=course.id, grade=Grade.A, attendance=80)
    )
    assert enrollment.student_id == student.id
    assert enrollment.course_id == course.id
    assert Grade(enrollment.grade) == Grade.IP
    assert enrollment.attendance == 0
    assert enrollment.last_updated is not None


async def test_create_enrollment_duplicate(storage):
    faculty = await make_user(storage, "prof", Role.faculty)
    student = await make_user(storage, "alice")
    course = await make_course(storage, "CS101", faculty.id)

    await storage.create_enrollment(Enrollment(student_id=student.id, course_id=course.id))
    with pytest.raises(ConflictError):
        await storage.create_enrollment(Enrollment(student_id=student.id, course_id=course.id))
    assert len(await storage.get_enrollments_by_user(student.id)) == 1


async def test_create_enrollment_unknown_references(storage):
    faculty = await make_user(storage, "prof", Role.faculty)
    student = await make_user(storage, "alice")
    course = await make_course(storage, "CS101", faculty.id)

    with pytest.raises(NotFoundError):
        await storage.create_enrollment(Enrollment(student_id=student.id, course_id=9999))
    with pytest.raises(NotFoundError):
        await storage.create_enrollment(Enrollment(student_id=9999, course_id=course.id))


async def test_update_enrollment(storage):
    """Test grading overwrites grade and attendance and moves last_updated forward"""
    faculty = await make_user(storage, "prof", Role.faculty)
    student = await make_user(storage, "alice")
    course = await make_course(storage, "CS101", faculty.id)
    enrollment = await storage.create_enrollment(Enrollment(student_id=student.id, course_id=course.id))

    updated = await storage.update_enrollment(enrollment.id, Grade.A, 95)
    assert Grade(updated.grade) == Grade.A
    assert updated.attendance == 95
    assert updated.last_updated > enrollment.last_updated

    again = await storage.update_enrollment(enrollment.id, Grade.B, 90)
    assert again.last_updated > updated.last_updated

    stored = await storage.get_enrollment(enrollment.id)
    assert Grade(stored.grade) == Grade.B
    assert stored.attendance == 90


async def test_update_enrollment_not_found(storage):
    assert await storage.update_enrollment(9999, Grade.A, 95) is None


async def test_get_enrollments_by_user_only_returns_own(storage):
    faculty = await make_user(storage, "prof", Role.faculty)
    alice = await make_user(storage, "alice")
    bob = await make_user(storage, "bob")
    cs101 = await make_course(storage, "CS101", faculty.id)
    cs102 = await make_course(storage, "CS102", faculty.id)

    mine = [
        await storage.create_enrollment(Enrollment(student_id=alice.id, course_id=cs101.id)),
        await storage.create_enrollment(Enrollment(student_id=alice.id, course_id=cs102.id)),
    ]
    await storage.create_enrollment(Enrollment(student_id=bob.id, course_id=cs101.id))

    enrollments = await storage.get_enrollments_by_user(alice.id)
    assert sorted(e.id for e in enrollments) == sorted(e.id for e in mine)
    assert all(e.student_id == alice.id for e in enrollments)

    by_course = await storage.get_enrollments_by_course(cs101.id)
    assert {e.student_id for e in by_course} == {alice.id, bob.id}


# ============= PAYMENT TESTS =============

async def test_create_payment(storage):
    """Test a payment is stored pending with its creation time"""
    student = await make_user(storage, "alice")
    payment = await storage.create_payment(
        Payment(student_id=student.id, amount=Decimal("1500.5"), description="Fall tuition",
                status=PaymentStatus.completed)
    )
    assert payment.id >= 1
    assert payment.student_id == student.id
    assert payment.amount == Decimal("1500.50")
    assert PaymentStatus(payment.status) == PaymentStatus.pending
    assert payment.created_at is not None


async def test_create_payment_unknown_student(storage):
    with pytest.raises(NotFoundError):
        await storage.create_payment(Payment(student_id=9999, amount=Decimal("10"), description="Fee"))


async def test_get_payments_by_user(storage):
    alice = await make_user(storage, "alice")
    bob = await make_user(storage, "bob")
    await storage.create_payment(Payment(student_id=alice.id, amount=Decimal("100"), description="Lab fee"))
    await storage.create_payment(Payment(student_id=bob.id, amount=Decimal("200"), description="Library fee"))

    payments = await storage.get_payments_by_user(alice.id)
    assert len(payments) == 1
    assert payments[0].description == "Lab fee"


async def test_update_payment_status(storage):
    student = await make_user(storage, "alice")
    payment = await storage.create_payment(
        Payment(student_id=student.id, amount=Decimal("100"), description="Lab fee")
    )

    completed = await storage.update_payment_status(payment.id, PaymentStatus.completed)
    assert PaymentStatus(completed.status) == PaymentStatus.completed

    # completed is terminal
    with pytest.raises(ConflictError):
        await storage.update_payment_status(payment.id, PaymentStatus.failed)
    assert PaymentStatus((await storage.get_payment(payment.id)).status) == PaymentStatus.completed


async def test_update_payment_status_not_found(storage):
    assert await storage.update_payment_status(9999, PaymentStatus.completed) is None


# ============= MEMORY STORAGE SPECIFICS =============

async def test_memory_storage_returns_copies():
    """Test mutating a returned record leaves the stored one alone"""
    storage = MemoryStorage()
    user = await make_user(storage, "alice")
    user.full_name = "Changed"

    assert (await storage.get_user(user.id)).full_name == "Alice"


async def test_memory_storage_instances_are_independent():
    first = MemoryStorage()
    second = MemoryStorage()
    await make_user(first, "alice")
    await make_user(first, "bob")

    carol = await make_user(second, "carol")
    assert carol.id == 1
    assert await second.get_user_by_username("alice") is None


def test_next_timestamp_is_strictly_later():
    previous = next_timestamp()
    assert next_timestamp(previous) > previous


# ============= DATABASE STORAGE SPECIFICS =============

async def test_database_foreign_key_violation_is_not_found():
    """Test an unknown reference caught by the schema surfaces as NotFoundError, not a conflict"""
    engine = create_db_engine("sqlite://")
    create_db_and_tables(engine)
    storage = DatabaseStorage(engine)

    with pytest.raises(NotFoundError, match="Student not found"):
        await storage.create_payment(Payment(student_id=9999, amount=Decimal("10"), description="Fee"))
    engine.dispose()
