from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, TypeAdapter


class CacheKind(str, Enum):
    ATTENDANCE = "attendance"
    EXAM_SCHEDULE = "exam_schedule"
    INTERNALS = "internals"
    CGPA = "cgpa"
    GREETING = "greeting"


class ScheduleType(str, Enum):
    MIDNIGHT = "midnight"
    AFTERNOON = "afternoon"


class Credentials(BaseModel):
    user_id: str
    secret: str

    def __repr__(self) -> str:
        return f"Credentials(user_id={self.user_id!r}, secret='***')"

    __str__ = __repr__


class Course(BaseModel):
    code: str
    total: int = 0
    present: int = 0
    absent: int = 0
    on_duty: int = 0
    percentage: float = 0.0


class Exam(BaseModel):
    course_code: str
    date: dt.date
    time: str = ""


class InternalsRecord(BaseModel):
    course: str
    marks: list[str] = []


class Semester(BaseModel):
    semester: str
    gpa: str = "-"
    cgpa: str = "-"
    credits: str | None = None


PAYLOAD_ADAPTERS: dict[CacheKind, TypeAdapter[Any]] = {
    CacheKind.ATTENDANCE: TypeAdapter(list[Course]),
    CacheKind.EXAM_SCHEDULE: TypeAdapter(list[Exam]),
    CacheKind.INTERNALS: TypeAdapter(list[InternalsRecord]),
    CacheKind.CGPA: TypeAdapter(list[Semester]),
    CacheKind.GREETING: TypeAdapter(str),
}


def dump_payload(kind: CacheKind, payload: Any) -> Any:
    return PAYLOAD_ADAPTERS[kind].dump_python(payload, mode="json")


def load_payload(kind: CacheKind, raw: Any) -> Any:
    return PAYLOAD_ADAPTERS[kind].validate_python(raw)


def first_name_from_greeting(greeting: str | None, default: str = "Student") -> str:
    # "Good Morning, Jane Doe!" -> "Jane"
    if not greeting or "," not in greeting:
        return default
    tail = greeting.split(",", 1)[1].strip().rstrip("!").strip()
    if not tail:
        return default
    return tail.split(" ")[0] or default
