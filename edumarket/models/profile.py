from beanie import Document, Indexed
from pydantic import Field
from datetime import datetime

from edumarket.utils.dates import utcnow


class Student(Document):
    """Student account (owned by the accounts service, read-only here)."""
    first_name: str | None = None
    last_name: str | None = None
    email: Indexed(str) | None = None
    profile_picture: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "students"


class TeacherProfile(Document):
    """Public teacher profile (owned by the accounts service, read-only here)."""
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: Indexed(str) | None = None
    profile_image: str | None = None
    specialisation: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "profiles"
