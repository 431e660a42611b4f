from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Final

from .errors import AppError, ErrorCode, app_error

_PHONE_RE: Final[re.Pattern[str]] = re.compile(r"^\+?[\d\s-]{8,}$")
_NAME_MIN: Final[int] = 2


@dataclass(frozen=True)
class Registration:
    name: str
    surname: str
    nationality: str
    phone: str
    dob: date

    @staticmethod
    def from_fields(
        *,
        name: str,
        surname: str,
        nationality: str,
        phone: str,
        dob: str,
        today: date | None = None,
    ) -> Registration:
        """Trim and validate raw form values; raises invalid_registration."""
        n = name.strip()
        s = surname.strip()
        nat = nationality.strip()
        ph = phone.strip()
        if len(n) < _NAME_MIN:
            raise _invalid("Name must be at least 2 characters long")
        if not s:
            raise _invalid("Surname is required")
        if not nat:
            raise _invalid("Nationality is required")
        if not _PHONE_RE.match(ph):
            raise _invalid("Please enter a valid phone number")
        try:
            born = date.fromisoformat(dob.strip()[:10])
        except ValueError:
            raise _invalid("Date of birth must be an ISO 8601 date") from None
        limit = today if today is not None else datetime.now(UTC).date()
        if born > limit:
            raise _invalid("Date of birth cannot be in the future")
        return Registration(name=n, surname=s, nationality=nat, phone=ph, dob=born)

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "surname": self.surname,
            "nationality": self.nationality,
            "phone": self.phone,
            "dob": self.dob.isoformat(),
        }

    @staticmethod
    def from_dict(d: dict[str, object]) -> Registration:
        return Registration(
            name=str(d["name"]),
            surname=str(d["surname"]),
            nationality=str(d["nationality"]),
            phone=str(d["phone"]),
            dob=date.fromisoformat(str(d["dob"])),
        )


def _invalid(message: str) -> AppError:
    return app_error(ErrorCode.invalid_registration, message)
