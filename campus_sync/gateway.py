from __future__ import annotations

import base64
import json
import logging
import re
from datetime import date, datetime
from typing import Any, Callable, Protocol

import httpx
from pydantic import ValidationError

from campus_sync.errors import DecodePayloadError, HttpStatusError, NetworkError
from campus_sync.models import Course, Credentials, Exam, InternalsRecord, Semester

logger = logging.getLogger(__name__)

PAYLOAD_SALT = "nimora_secure_payload_2025"


class DataGateway(Protocol):
    async def login(self, credentials: Credentials) -> Any: ...

    async def fetch_attendance(self, credentials: Credentials) -> list[Course]: ...

    async def fetch_exam_schedule(self, credentials: Credentials) -> list[Exam]: ...

    async def fetch_internals(self, credentials: Credentials) -> list[InternalsRecord]: ...

    async def fetch_cgpa(self, credentials: Credentials) -> list[Semester]: ...

    async def fetch_greeting(self, credentials: Credentials) -> str: ...


def encode_payload(data: Any) -> str:
    inner = base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")
    obfuscated = inner[::-1] + PAYLOAD_SALT
    return base64.b64encode(obfuscated.encode("ascii")).decode("ascii")


def decode_payload(encoded: str) -> Any:
    try:
        obfuscated = base64.b64decode(encoded).decode("ascii")
        inner = obfuscated[: -len(PAYLOAD_SALT)][::-1]
        return json.loads(base64.b64decode(inner).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise DecodePayloadError(f"bad encoded payload: {e}") from e


def _num(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(str(value).strip().rstrip("%"))
    except ValueError:
        return default


def _pick(item: Any, key: str, index: int) -> Any:
    if isinstance(item, dict):
        return item.get(key)
    if isinstance(item, (list, tuple)) and len(item) > index:
        return item[index]
    return None


def parse_exam_date(text: str) -> date | None:
    # Remote format is DD-MM-YY.
    m = re.fullmatch(r"\s*(\d{1,2})-(\d{1,2})-(\d{2}|\d{4})\s*", text or "")
    if not m:
        return None
    day, month, year = (int(g) for g in m.groups())
    if year < 100:
        year += 2000
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_attendance(data: Any) -> list[Course]:
    if not isinstance(data, list):
        raise DecodePayloadError("attendance payload is not a list")
    out: list[Course] = []
    for item in data:
        code = _pick(item, "course_code", 0)
        if not code:
            continue
        out.append(
            Course(
                code=str(code).strip(),
                total=int(_num(_pick(item, "total_classes", 1))),
                absent=int(_num(_pick(item, "absent", 2))),
                on_duty=int(_num(_pick(item, "od", 3))),
                present=int(_num(_pick(item, "present", 4))),
                percentage=_num(_pick(item, "percentage", 5)),
            )
        )
    return out


def parse_exam_schedule(data: Any) -> list[Exam]:
    exams = data.get("exams") if isinstance(data, dict) else None
    if exams is None:
        return []
    if not isinstance(exams, list):
        raise DecodePayloadError("exam schedule 'exams' is not a list")
    out: list[Exam] = []
    for item in exams:
        if isinstance(item, dict):
            code = item.get("course_code") or item.get("COURSE_CODE")
            raw_date = item.get("date") or item.get("DATE")
            time_s = item.get("time") or item.get("TIME") or ""
        else:
            code, raw_date, time_s = (_pick(item, "", i) for i in range(3))
        if not code or not raw_date:
            continue
        d = parse_exam_date(str(raw_date))
        if d is None:
            logger.warning("skipping exam %s with unparseable date %r", code, raw_date)
            continue
        out.append(Exam(course_code=str(code).strip(), date=d, time=str(time_s or "").strip()))
    return out


def parse_internals(data: Any) -> list[InternalsRecord]:
    if not isinstance(data, list):
        raise DecodePayloadError("internals payload is not a list")
    out: list[InternalsRecord] = []
    for row in data:
        if isinstance(row, dict):
            course = row.get("course") or row.get("course_code")
            marks = row.get("marks") or []
        elif isinstance(row, (list, tuple)) and row:
            # Trailing column is the total, shown separately.
            course, marks = row[0], list(row[1:-1])
        else:
            continue
        if not course:
            continue
        out.append(InternalsRecord(course=str(course), marks=[str(m) for m in marks if m is not None]))
    return out


def parse_cgpa(data: Any) -> list[Semester]:
    if not isinstance(data, list):
        raise DecodePayloadError("cgpa payload is not a list")
    out: list[Semester] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        sem = item.get("SEMESTER") or item.get("semester")
        if sem is None:
            continue
        credits = item.get("CREDITS") or item.get("credits")
        out.append(
            Semester(
                semester=str(sem),
                gpa=str(item.get("GPA") or item.get("gpa") or "-"),
                cgpa=str(item.get("CGPA") or item.get("cgpa") or "-"),
                credits=str(credits) if credits is not None else None,
            )
        )
    return out


def time_greeting(hour: int) -> str:
    if hour < 12:
        return "Good Morning"
    if hour < 18:
        return "Good Afternoon"
    return "Good Evening"


def build_greeting(data: Any, *, fallback_name: str, hour: int) -> str:
    if not isinstance(data, dict):
        raise DecodePayloadError("user-info payload is not an object")
    name = str(data.get("username") or fallback_name)
    prefix = time_greeting(hour)
    if data.get("is_birthday"):
        return f"{prefix} & Happy Birthday, {name}!"
    return f"{prefix}, {name}!"


class RemoteGateway:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 15.0,
        now: Callable[[], datetime] = datetime.now,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._now = now

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, endpoint: str, body: dict[str, Any]) -> Any:
        try:
            r = await self._client.post(endpoint, json={"data": encode_payload(body)})
        except httpx.HTTPError as e:
            raise NetworkError(f"{endpoint}: {type(e).__name__}: {e}") from e
        if r.status_code >= 400:
            raise HttpStatusError(r.status_code, endpoint)
        try:
            return r.json()
        except ValueError as e:
            raise DecodePayloadError(f"{endpoint}: response is not JSON") from e

    @staticmethod
    def _body(credentials: Credentials) -> dict[str, Any]:
        return {"rollno": credentials.user_id, "password": credentials.secret}

    async def _decode(self, endpoint: str, credentials: Credentials, parser: Callable[[Any], Any]) -> Any:
        data = await self._post(endpoint, self._body(credentials))
        try:
            return parser(data)
        except (ValidationError, TypeError, ValueError) as e:
            raise DecodePayloadError(f"{endpoint}: {e}") from e

    async def login(self, credentials: Credentials) -> Any:
        return await self._post("/login", self._body(credentials))

    async def fetch_attendance(self, credentials: Credentials) -> list[Course]:
        return await self._decode("/attendance", credentials, parse_attendance)

    async def fetch_exam_schedule(self, credentials: Credentials) -> list[Exam]:
        return await self._decode("/exam-schedule", credentials, parse_exam_schedule)

    async def fetch_internals(self, credentials: Credentials) -> list[InternalsRecord]:
        return await self._decode("/internals", credentials, parse_internals)

    async def fetch_cgpa(self, credentials: Credentials) -> list[Semester]:
        return await self._decode("/cgpa", credentials, parse_cgpa)

    async def fetch_greeting(self, credentials: Credentials) -> str:
        hour = self._now().hour
        return await self._decode(
            "/user-info",
            credentials,
            lambda data: build_greeting(data, fallback_name=credentials.user_id, hour=hour),
        )
