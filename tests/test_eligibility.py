from datetime import date

import pytest

from fakes import TOKEN
from portfolio_checkout.errors import BackendError, IdentityMissing, IdentityValidationError
from portfolio_checkout.schemas import IdentityIn
from portfolio_checkout.services.eligibility import EligibilityGate, age_on, parse_birth_date

TODAY = date(2026, 10, 19)


@pytest.fixture
def gate(backend):
    return EligibilityGate(backend, minimum_age=18, today=lambda: TODAY)


def fields(**overrides):
    data = dict(full_name="Asha Rao", date_of_birth="1990-04-12", phone="+91 98765 43210", tax_id="abcde1234f")
    data.update(overrides)
    return IdentityIn(**data)


def test_parse_birth_date_formats():
    assert parse_birth_date("1990-04-12") == date(1990, 4, 12)
    assert parse_birth_date("12/04/1990") == date(1990, 4, 12)
    assert parse_birth_date("1990-04-12T00:00:00.000Z") == date(1990, 4, 12)
    assert parse_birth_date("not a date") is None


def test_age_counts_birthdays():
    assert age_on(date(2008, 10, 20), TODAY) == 17
    assert age_on(date(2008, 10, 19), TODAY) == 18


async def test_profile_with_pan_is_eligible(gate, backend):
    result = await gate.check_eligibility(TOKEN)
    assert result.eligible
    assert result.profile.email == "asha@example.com"


async def test_profile_without_pan_is_not_eligible(gate, backend):
    backend.profile = backend.profile.model_copy(update={"tax_id": "  "})
    result = await gate.check_eligibility(TOKEN)
    assert not result.eligible


class TestValidation:
    def test_pan_is_normalized_to_uppercase(self, gate):
        submission = gate.validate(fields())
        assert submission.tax_id == "ABCDE1234F"
        assert submission.date_of_birth == date(1990, 4, 12)

    @pytest.mark.parametrize("tax_id", ["ABCD1234F", "ABCDE12345", "12345ABCDE", ""])
    def test_malformed_pan_is_rejected(self, gate, tax_id):
        with pytest.raises(IdentityValidationError) as info:
            gate.validate(fields(tax_id=tax_id))
        assert set(info.value.field_errors) == {"tax_id"}

    def test_minors_are_rejected(self, gate):
        with pytest.raises(IdentityValidationError) as info:
            gate.validate(fields(date_of_birth="2010-01-01"))
        assert "18" in info.value.field_errors["date_of_birth"]

    def test_every_bad_field_is_reported(self, gate):
        with pytest.raises(IdentityValidationError) as info:
            gate.validate(IdentityIn(full_name=" ", date_of_birth="31/31/1990", phone="123", tax_id="x"))
        assert set(info.value.field_errors) == {"full_name", "date_of_birth", "phone", "tax_id"}


class TestSubmitIdentity:
    async def test_rechecks_the_backend_after_update(self, gate, backend):
        backend.profile = backend.profile.model_copy(update={"tax_id": None})

        profile = await gate.submit_identity(TOKEN, fields())

        assert profile.tax_id == "ABCDE1234F"
        assert backend.count("update_profile") == 1
        assert backend.count("get_profile") == 1

    async def test_submitted_echo_is_not_trusted(self, gate, backend):
        backend.profile = backend.profile.model_copy(update={"tax_id": None})
        backend.apply_profile_updates = False

        with pytest.raises(IdentityMissing):
            await gate.submit_identity(TOKEN, fields())

    async def test_backend_rejection_is_reported_inline(self, gate, backend):
        backend.update_error = BackendError(400, {"message": "PAN already linked to another account"})

        with pytest.raises(IdentityValidationError) as info:
            await gate.submit_identity(TOKEN, fields())
        assert info.value.message == "PAN already linked to another account"

    async def test_invalid_fields_never_reach_the_backend(self, gate, backend):
        with pytest.raises(IdentityValidationError):
            await gate.submit_identity(TOKEN, fields(tax_id="bad"))
        assert backend.count("update_profile") == 0
