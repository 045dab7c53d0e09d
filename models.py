from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back from DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, Enum):
    student = "student"
    faculty = "faculty"
    admin = "admin"


class Grade(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"
    IP = "IP"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class User(SQLModel, table=True):
    """User model for database"""
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True, min_length=1)
    password: str
    role: Role
    full_name: str = Field(min_length=1, max_length=100)
    email: str


class Course(SQLModel, table=True):
    """Course model for database"""
    __tablename__ = "courses"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True, min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=200)
    description: str = Field(max_length=1000)
    instructor_id: int = Field(foreign_key="users.id", index=True)
    credits: int = Field(ge=1)


class Enrollment(SQLModel, table=True):
    """Enrollment model linking students and courses"""
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("student_id", "course_id", name="uq_enrollment_student_course"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="users.id", index=True)
    course_id: int = Field(foreign_key="courses.id", index=True)
    grade: Grade = Field(default=Grade.IP)
    attendance: int = Field(default=0, ge=0, le=100)
    last_updated: datetime = Field(default_factory=utcnow)


class Payment(SQLModel, table=True):
    """Tuition payment submitted by a student"""
    __tablename__ = "payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="users.id", index=True)
    amount: Decimal = Field(max_digits=10, decimal_places=2, gt=0)
    description: str = Field(max_length=500)
    status: PaymentStatus = Field(default=PaymentStatus.pending)
    created_at: datetime = Field(default_factory=utcnow)
