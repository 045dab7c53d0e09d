from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from decimal import Decimal

from models import Role, Grade, PaymentStatus

# Largest id a 64-bit INTEGER primary key can hold
MAX_ID = 2**63 - 1


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# User Schemas
class UserBase(ApiModel):
    """Base schema for user with common attributes"""
    username: str = Field(..., min_length=1, max_length=50, description="Unique login name")
    role: Role = Field(..., description="One of student, faculty, admin")
    full_name: str = Field(..., min_length=1, max_length=100, description="User's full name")
    email: EmailStr = Field(..., description="User's email address")


class UserCreate(UserBase):
    """Schema for registering a new user"""
    password: str = Field(..., min_length=1, max_length=128)


class UserResponse(UserBase):
    """Public view of a user; never carries the password hash"""
    id: int


class LoginRequest(ApiModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


# Course Schemas
class CourseCreate(ApiModel):
    """Schema for creating a course; the instructor is always the caller"""
    code: str = Field(..., min_length=1, max_length=20, description="Course code, e.g. CS101")
    name: str = Field(..., min_length=1, max_length=200, description="Course name")
    description: str = Field(..., min_length=1, max_length=1000, description="Course description")
    credits: int = Field(..., ge=1, description="Number of credits")


class CourseResponse(CourseCreate):
    id: int
    instructor_id: int


# Enrollment Schemas
class EnrollmentCreate(ApiModel):
    """Schema for self-enrollment; the student is always the caller"""
    course_id: int = Field(..., ge=1, le=MAX_ID, description="Course ID")


class EnrollmentUpdate(ApiModel):
    """Schema for recording a grade and attendance"""
    grade: Grade = Field(..., description="A, B, C, D, F or IP")
    attendance: int = Field(..., ge=0, le=100, description="Attendance percentage")


class EnrollmentResponse(ApiModel):
    id: int
    student_id: int
    course_id: int
    grade: Grade
    attendance: int
    last_updated: datetime


# Payment Schemas
class PaymentCreate(ApiModel):
    """Schema for submitting a tuition payment"""
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, description="Amount paid")
    description: str = Field(..., min_length=1, max_length=500, description="What the payment covers")


class PaymentStatusUpdate(ApiModel):
    status: PaymentStatus


class PaymentResponse(PaymentCreate):
    id: int
    student_id: int
    status: PaymentStatus
    created_at: datetime
