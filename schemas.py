# schemas.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Role


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# === USERS ===
class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str
    password: str
    role: str = "STUDENT"
    cpf: str
    profession: Optional[str] = None


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    state: Optional[str] = None
    about: Optional[str] = None
    cpf: Optional[str] = None
    profession: Optional[str] = None


class UserOut(ORMModel):
    id: int
    name: str
    email: str
    role: Role
    cpf: str
    profession: Optional[str] = None
    state: Optional[str] = None
    about: Optional[str] = None
    profile_picture: Optional[str] = None


class LoginIn(BaseModel):
    email: str
    password: str


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


class ForgotPasswordIn(BaseModel):
    email: str


class ResetPasswordIn(BaseModel):
    token: str
    password: str


class ProfilePictureIn(BaseModel):
    profile_picture: str = Field(min_length=1)


# === COURSES ===
class CourseBase(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    video_url: Optional[str] = None
    cover_image: Optional[str] = None


class CourseCreate(CourseBase):
    pass


class CourseWithSubcoursesCreate(CourseBase):
    sub_courses: List[CourseBase]


class CourseUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    video_url: Optional[str] = None
    cover_image: Optional[str] = None


class SubCourseOut(ORMModel):
    id: int
    title: str
    description: str
    price: float
    video_url: Optional[str] = None
    cover_image: Optional[str] = None
    parent_id: Optional[int] = None


class CourseOut(SubCourseOut):
    sub_courses: List[SubCourseOut] = []


class EntitlementIn(BaseModel):
    user_id: int = Field(alias="userId")
    course_id: int = Field(alias="courseId")

    model_config = ConfigDict(populate_by_name=True)


class EntitlementOut(ORMModel):
    user_id: int
    course_id: int
    granted_at: Optional[datetime] = None


# === QUESTIONS ===
class QuestionCreate(BaseModel):
    course_id: int = Field(alias="courseId")
    title: str = Field(min_length=1)
    options: List[str] = Field(min_length=2)
    answer: str

    model_config = ConfigDict(populate_by_name=True)


class QuestionUpdate(BaseModel):
    title: Optional[str] = None
    options: Optional[List[str]] = None
    answer: Optional[str] = None


class QuestionOut(ORMModel):
    id: int
    course_id: int
    title: str
    options: List[str]
    answer: str


# === PAYMENTS ===
MAX_ID = 2**63 - 1


class CheckoutIn(BaseModel):
    user_id: int = Field(alias="userId", gt=0, le=MAX_ID)
    course_id: int = Field(alias="courseId", gt=0, le=MAX_ID)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutOut(BaseModel):
    redirectUrl: str
    sessionId: str
