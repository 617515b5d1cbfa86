import pytest

from rideauth.service.errors import InvalidInput
from rideauth.service.passwords import (
    PasswordHasherService,
    password_policy_violations,
    validate_password_strength,
)


@pytest.fixture
def hasher():
    return PasswordHasherService(work_factor=1)


def test_hash_is_salted_and_not_plaintext(hasher):
    first = hasher.hash("Str0ng!Pass")
    second = hasher.hash("Str0ng!Pass")

    assert first != "Str0ng!Pass"
    assert first.startswith("$argon2id$")
    assert first != second


def test_verify_accepts_only_the_hashed_password(hasher):
    stored = hasher.hash("Str0ng!Pass")

    assert hasher.verify("Str0ng!Pass", stored) is True
    assert hasher.verify("str0ng!pass", stored) is False
    assert hasher.verify("", stored) is False


def test_verify_never_raises_on_garbage_hash(hasher):
    assert hasher.verify("Str0ng!Pass", "not-a-hash") is False
    assert hasher.verify("Str0ng!Pass", "") is False


def test_hash_rejects_empty_password(hasher):
    with pytest.raises(InvalidInput):
        hasher.hash("")


def test_needs_rehash_when_work_factor_changes():
    weak = PasswordHasherService(work_factor=1).hash("Str0ng!Pass")

    assert PasswordHasherService(work_factor=1).needs_rehash(weak) is False
    assert PasswordHasherService(work_factor=2).needs_rehash(weak) is True


@pytest.mark.parametrize(
    "candidate, missing",
    [
        ("Sh0rt!", "at least 8 characters"),
        ("alllower1!", "an uppercase letter"),
        ("ALLUPPER1!", "a lowercase letter"),
        ("NoDigits!!", "a number"),
        ("NoSpecial12", "a special character"),
    ],
)
def test_policy_names_each_missing_rule(candidate, missing):
    assert missing in password_policy_violations(candidate)


def test_policy_caps_length():
    assert "at most 128 characters" in password_policy_violations("Aa1!" * 33)


def test_validate_strength_reports_violations():
    with pytest.raises(InvalidInput) as excinfo:
        validate_password_strength("weak")

    assert excinfo.value.status_code == 400
    assert "a special character" in excinfo.value.detail["violations"]


def test_validate_strength_accepts_compliant_password():
    validate_password_strength("Str0ng!Pass")
