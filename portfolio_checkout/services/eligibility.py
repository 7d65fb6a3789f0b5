import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

import structlog

from ..config import settings
from ..errors import BackendError, IdentityMissing, IdentityValidationError
from ..schemas import PAN_PATTERN, IdentityIn, IdentitySubmission, Profile

logger = structlog.get_logger(__name__)

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y")


@dataclass
class EligibilityResult:
    eligible: bool
    profile: Optional[Profile] = None


def parse_birth_date(value: str) -> Optional[date]:
    value = (value or "").strip()
    # ISO timestamps come back from the profile endpoint
    if "T" in value:
        value = value.split("T", 1)[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def age_on(born: date, today: date) -> int:
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


class EligibilityGate:
    """Tax-identity (PAN) check that must pass before any order or mandate is created."""

    def __init__(self, backend, minimum_age: int = settings.minimum_age, today: Callable[[], date] = date.today):
        self.backend = backend
        self.minimum_age = minimum_age
        self._today = today

    async def check_eligibility(self, token: str) -> EligibilityResult:
        profile = await self.backend.get_profile(token)
        return EligibilityResult(eligible=profile.has_tax_id, profile=profile)

    def validate(self, fields: IdentityIn) -> IdentitySubmission:
        errors = {}
        full_name = fields.full_name.strip()
        if not full_name:
            errors["full_name"] = "Full name is required."

        tax_id = fields.tax_id.strip().upper()
        if not PAN_PATTERN.match(tax_id):
            errors["tax_id"] = "PAN must be 5 letters, 4 digits and 1 letter (e.g. ABCDE1234F)."

        digits = re.sub(r"\D", "", fields.phone or "")
        if len(digits) < 10:
            errors["phone"] = "Enter a valid phone number."

        born = parse_birth_date(fields.date_of_birth)
        if born is None:
            errors["date_of_birth"] = "Enter a valid date of birth."
        elif age_on(born, self._today()) < self.minimum_age:
            errors["date_of_birth"] = f"You must be at least {self.minimum_age} years old."

        if errors:
            raise IdentityValidationError(errors)
        return IdentitySubmission(full_name=full_name, date_of_birth=born, phone=fields.phone, tax_id=tax_id)

    async def submit_identity(self, token: str, fields: IdentityIn) -> Profile:
        """Validate and store the identity record, then re-check it on the backend.

        Only the backend's view counts: the submitted echo is not trusted.
        """
        submission = self.validate(fields)
        try:
            await self.backend.update_profile(token, submission)
        except BackendError as exc:
            logger.info("identity_update_rejected", status=exc.status_code, code=exc.code)
            raise IdentityValidationError({}, message=exc.message)

        result = await self.check_eligibility(token)
        if not result.eligible:
            raise IdentityMissing("We could not confirm your PAN details yet. Please try again.")
        return result.profile
