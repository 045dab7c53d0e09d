"""Persistence for users, courses, enrollments and payments.

``Storage`` is the contract the API layer talks to. Two realizations exist:

* ``MemoryStorage`` keeps records in per-entity dicts owned by the instance and
  loses them when the process exits.
* ``DatabaseStorage`` keeps records in a relational database through SQLModel,
  with unique indexes on ``username``/``code`` and foreign keys on every
  reference column.

Both raise the same errors and return the same shapes for every operation, so
either one can be handed to ``create_app``.
"""
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from config import Settings
from database import create_db_engine, create_db_and_tables
from errors import ConflictError, NotFoundError
from models import User, Course, Enrollment, Payment, Grade, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Payment state machine: completed and failed are terminal
PAYMENT_TRANSITIONS = {
    PaymentStatus.pending: {PaymentStatus.completed, PaymentStatus.failed},
    PaymentStatus.completed: set(),
    PaymentStatus.failed: set(),
}


def next_timestamp(previous: Optional[datetime] = None) -> datetime:
    """Current time, nudged forward so it is strictly later than ``previous``"""
    now = utcnow()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


def is_foreign_key_violation(error: IntegrityError) -> bool:
    # SQLite: "FOREIGN KEY constraint failed", PostgreSQL: "violates foreign key constraint"
    return "foreign key" in str(error.orig).lower()


def check_payment_transition(payment: Payment, new_status: PaymentStatus) -> None:
    current = PaymentStatus(payment.status)
    if PaymentStatus(new_status) not in PAYMENT_TRANSITIONS[current]:
        raise ConflictError(f"Payment cannot move from {current.value} to {PaymentStatus(new_status).value}")


class Storage(ABC):

    async def setup(self) -> None:
        """Prepare the backing store before the first request"""

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Persist a new user; ConflictError if the username is taken"""

    @abstractmethod
    async def get_course(self, course_id: int) -> Optional[Course]: ...

    @abstractmethod
    async def get_all_courses(self) -> List[Course]: ...

    @abstractmethod
    async def get_courses_by_instructor(self, instructor_id: int) -> List[Course]: ...

    @abstractmethod
    async def create_course(self, course: Course) -> Course:
        """Persist a new course; ConflictError on a duplicate code, NotFoundError for an unknown instructor"""

    @abstractmethod
    async def get_enrollment(self, enrollment_id: int) -> Optional[Enrollment]: ...

    @abstractmethod
    async def get_enrollments_by_user(self, student_id: int) -> List[Enrollment]: ...

    @abstractmethod
    async def get_enrollments_by_course(self, course_id: int) -> List[Enrollment]: ...

    @abstractmethod
    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        """Persist a new enrollment with grade IP and attendance 0.

        ConflictError if the student is already enrolled in the course,
        NotFoundError if the student or course does not exist.
        """

    @abstractmethod
    async def update_enrollment(self, enrollment_id: int, grade: Grade, attendance: int) -> Optional[Enrollment]:
        """Overwrite grade and attendance and refresh last_updated; None if the id is unknown"""

    @abstractmethod
    async def get_payment(self, payment_id: int) -> Optional[Payment]: ...

    @abstractmethod
    async def get_payments_by_user(self, student_id: int) -> List[Payment]: ...

    @abstractmethod
    async def create_payment(self, payment: Payment) -> Payment:
        """Persist a new pending payment; NotFoundError for an unknown student"""

    @abstractmethod
    async def update_payment_status(self, payment_id: int, status: PaymentStatus) -> Optional[Payment]:
        """Move a pending payment to completed/failed; None if the id is unknown"""


def _copy(record):
    return type(record)(**record.model_dump())


class MemoryStorage(Storage):
    """Volatile storage; every instance owns its own tables and id counters"""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[int, User] = {}
        self._courses: Dict[int, Course] = {}
        self._enrollments: Dict[int, Enrollment] = {}
        self._payments: Dict[int, Payment] = {}
        self._ids = {
            User: itertools.count(1),
            Course: itertools.count(1),
            Enrollment: itertools.count(1),
            Payment: itertools.count(1),
        }

    def _insert(self, table: dict, record):
        record = _copy(record)
        record.id = next(self._ids[type(record)])
        table[record.id] = record
        return _copy(record)

    async def get_user(self, user_id: int) -> Optional[User]:
        user = self._users.get(user_id)
        return _copy(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        for user in self._users.values():
            if user.username == username:
                return _copy(user)
        return None

    async def create_user(self, user: User) -> User:
        with self._lock:
            if any(u.username == user.username for u in self._users.values()):
                raise ConflictError("Username already registered")
            created = self._insert(self._users, user)
        logger.info(f"User created with ID: {created.id}")
        return created

    async def get_course(self, course_id: int) -> Optional[Course]:
        course = self._courses.get(course_id)
        return _copy(course) if course else None

    async def get_all_courses(self) -> List[Course]:
        return [_copy(c) for c in self._courses.values()]

    async def get_courses_by_instructor(self, instructor_id: int) -> List[Course]:
        return [_copy(c) for c in self._courses.values() if c.instructor_id == instructor_id]

    async def create_course(self, course: Course) -> Course:
        with self._lock:
            if course.instructor_id not in self._users:
                raise NotFoundError("Instructor not found")
            if any(c.code == course.code for c in self._courses.values()):
                raise ConflictError("Course code already exists")
            created = self._insert(self._courses, course)
        logger.info(f"Course created with ID: {created.id}")
        return created

    async def get_enrollment(self, enrollment_id: int) -> Optional[Enrollment]:
        enrollment = self._enrollments.get(enrollment_id)
        return _copy(enrollment) if enrollment else None

    async def get_enrollments_by_user(self, student_id: int) -> List[Enrollment]:
        return [_copy(e) for e in self._enrollments.values() if e.student_id == student_id]

    async def get_enrollments_by_course(self, course_id: int) -> List[Enrollment]:
        return [_copy(e) for e in self._enrollments.values() if e.course_id == course_id]

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        with self._lock:
            if enrollment.student_id not in self._users:
                raise NotFoundError("Student not found")
            if enrollment.course_id not in self._courses:
                raise NotFoundError("Course not found")
            if any(
                e.student_id == enrollment.student_id and e.course_id == enrollment.course_id
                for e in self._enrollments.values()
            ):
                raise ConflictError("Student already enrolled in this course")
            enrollment = _copy(enrollment)
            enrollment.grade = Grade.IP
            enrollment.attendance = 0
            enrollment.last_updated = next_timestamp()
            created = self._insert(self._enrollments, enrollment)
        logger.info(f"Enrollment created with ID: {created.id}")
        return created

    async def update_enrollment(self, enrollment_id: int, grade: Grade, attendance: int) -> Optional[Enrollment]:
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None:
                return None
            enrollment.grade = Grade(grade)
            enrollment.attendance = attendance
            enrollment.last_updated = next_timestamp(enrollment.last_updated)
            return _copy(enrollment)

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        return _copy(payment) if payment else None

    async def get_payments_by_user(self, student_id: int) -> List[Payment]:
        return [_copy(p) for p in self._payments.values() if p.student_id == student_id]

    async def create_payment(self, payment: Payment) -> Payment:
        with self._lock:
            if payment.student_id not in self._users:
                raise NotFoundError("Student not found")
            payment = _copy(payment)
            # match what a NUMERIC(10, 2) column hands back
            payment.amount = Decimal(payment.amount).quantize(CENTS)
            payment.status = PaymentStatus.pending
            payment.created_at = next_timestamp()
            created = self._insert(self._payments, payment)
        logger.info(f"Payment created with ID: {created.id}")
        return created

    async def update_payment_status(self, payment_id: int, status: PaymentStatus) -> Optional[Payment]:
        with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                return None
            check_payment_transition(payment, status)
            payment.status = PaymentStatus(status)
            return _copy(payment)


class DatabaseStorage(Storage):
    """Durable storage on a SQLAlchemy engine; one session per operation"""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _save(self, session: Session, record, conflict_detail: str, missing_detail: str = "Referenced record not found"):
        try:
            session.add(record)
            session.commit()
        except IntegrityError as e:
            logger.warning(f"Integrity error saving {type(record).__name__}: {str(e.orig)}")
            session.rollback()
            if is_foreign_key_violation(e):
                raise NotFoundError(missing_detail)
            raise ConflictError(conflict_detail)
        session.refresh(record)
        return record

    async def setup(self) -> None:
        create_db_and_tables(self.engine)
        logger.info("Database tables created successfully")

    async def get_user(self, user_id: int) -> Optional[User]:
        with self._session() as session:
            return session.get(User, user_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        with self._session() as session:
            return session.exec(select(User).where(User.username == username)).first()

    async def create_user(self, user: User) -> User:
        with self._session() as session:
            if session.exec(select(User).where(User.username == user.username)).first():
                raise ConflictError("Username already registered")
            db_user = User(**user.model_dump(exclude={"id"}))
            created = self._save(session, db_user, "Username already registered")
        logger.info(f"User created with ID: {created.id}")
        return created

    async def get_course(self, course_id: int) -> Optional[Course]:
        with self._session() as session:
            return session.get(Course, course_id)

    async def get_all_courses(self) -> List[Course]:
        with self._session() as session:
            return list(session.exec(select(Course).order_by(Course.id)).all())

    async def get_courses_by_instructor(self, instructor_id: int) -> List[Course]:
        with self._session() as session:
            statement = select(Course).where(Course.instructor_id == instructor_id).order_by(Course.id)
            return list(session.exec(statement).all())

    async def create_course(self, course: Course) -> Course:
        with self._session() as session:
            if not session.get(User, course.instructor_id):
                raise NotFoundError("Instructor not found")
            if session.exec(select(Course).where(Course.code == course.code)).first():
                raise ConflictError("Course code already exists")
            db_course = Course(**course.model_dump(exclude={"id"}))
            created = self._save(session, db_course, "Course code already exists")
        logger.info(f"Course created with ID: {created.id}")
        return created

    async def get_enrollment(self, enrollment_id: int) -> Optional[Enrollment]:
        with self._session() as session:
            return session.get(Enrollment, enrollment_id)

    async def get_enrollments_by_user(self, student_id: int) -> List[Enrollment]:
        with self._session() as session:
            statement = select(Enrollment).where(Enrollment.student_id == student_id).order_by(Enrollment.id)
            return list(session.exec(statement).all())

    async def get_enrollments_by_course(self, course_id: int) -> List[Enrollment]:
        with self._session() as session:
            statement = select(Enrollment).where(Enrollment.course_id == course_id).order_by(Enrollment.id)
            return list(session.exec(statement).all())

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        with self._session() as session:
            if not session.get(User, enrollment.student_id):
                raise NotFoundError("Student not found")
            if not session.get(Course, enrollment.course_id):
                raise NotFoundError("Course not found")
            existing = session.exec(
                select(Enrollment).where(
                    Enrollment.student_id == enrollment.student_id,
                    Enrollment.course_id == enrollment.course_id
                )
            ).first()
            if existing:
                raise ConflictError("Student already enrolled in this course")
            db_enrollment = Enrollment(
                student_id=enrollment.student_id,
                course_id=enrollment.course_id,
                grade=Grade.IP,
                attendance=0,
                last_updated=next_timestamp(),
            )
            created = self._save(session, db_enrollment, "Student already enrolled in this course")
        logger.info(f"Enrollment created with ID: {created.id}")
        return created

    async def update_enrollment(self, enrollment_id: int, grade: Grade, attendance: int) -> Optional[Enrollment]:
        with self._session() as session:
            db_enrollment = session.get(Enrollment, enrollment_id)
            if not db_enrollment:
                return None
            db_enrollment.grade = Grade(grade)
            db_enrollment.attendance = attendance
            db_enrollment.last_updated = next_timestamp(db_enrollment.last_updated)
            session.add(db_enrollment)
            session.commit()
            session.refresh(db_enrollment)
            return db_enrollment

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        with self._session() as session:
            return session.get(Payment, payment_id)

    async def get_payments_by_user(self, student_id: int) -> List[Payment]:
        with self._session() as session:
            statement = select(Payment).where(Payment.student_id == student_id).order_by(Payment.id)
            return list(session.exec(statement).all())

    async def create_payment(self, payment: Payment) -> Payment:
        with self._session() as session:
            # the student_id foreign key rejects unknown students
            db_payment = Payment(
                student_id=payment.student_id,
                amount=Decimal(payment.amount).quantize(CENTS),
                description=payment.description,
                status=PaymentStatus.pending,
                created_at=next_timestamp(),
            )
            created = self._save(session, db_payment, "Payment could not be stored", "Student not found")
        logger.info(f"Payment created with ID: {created.id}")
        return created

    async def update_payment_status(self, payment_id: int, status: PaymentStatus) -> Optional[Payment]:
        with self._session() as session:
            db_payment = session.get(Payment, payment_id)
            if not db_payment:
                return None
            check_payment_transition(db_payment, status)
            db_payment.status = PaymentStatus(status)
            session.add(db_payment)
            session.commit()
            session.refresh(db_payment)
            return db_payment


def build_storage(settings: Settings) -> Storage:
    if settings.STORAGE_BACKEND == "memory":
        logger.info("Using in-memory storage; records are lost on restart")
        return MemoryStorage()
    engine = create_db_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
    return DatabaseStorage(engine)
