"""Tests for password strength rules, generation and hashing."""

import pytest

from rbac_admin.service.passwords import check_password_strength, generate_password


class TestPasswordStrength:
    """Rules are reported one at a time, in a fixed order."""

    def test_short_password_reports_length_first(self):
        assert check_password_strength("weak") == "Password must be at least 8 characters long"

    @pytest.mark.parametrize(
        "password, message",
        [
            ("WEAKPASSWORD1!", "Password must contain at least one lowercase letter"),
            ("weakpassword1!", "Password must contain at least one uppercase letter"),
            ("Weakpassword!", "Password must contain at least one number"),
            ("Weakpassword1", "Password must contain at least one special character"),
        ],
    )
    def test_each_character_class_is_mandatory(self, password, message):
        assert check_password_strength(password) == message

    def test_strong_password_passes(self):
        assert check_password_strength("Admin123!") is None

    def test_configurable_minimum_length(self):
        assert check_password_strength("Abc1!xyz", min_length=10) == (
            "Password must be at least 10 characters long"
        )


class TestGeneratePassword:
    def test_generated_passwords_pass_the_rules(self):
        for _ in range(50):
            password = generate_password()
            assert len(password) == 12
            assert check_password_strength(password) is None

    def test_generated_passwords_differ(self):
        assert len({generate_password() for _ in range(20)}) == 20


class TestPasswordManager:
    """argon2id hashing."""

    def test_hash_is_salted_argon2id(self, passwords):
        first = passwords.hash("Admin123!")
        second = passwords.hash("Admin123!")

        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify(self, passwords):
        stored = passwords.hash("Admin123!")
        assert passwords.verify(stored, "Admin123!") is True
        assert passwords.verify(stored, "Admin123?") is False

    def test_unreadable_or_empty_hash_never_verifies(self, passwords):
        assert passwords.verify("", "Admin123!") is False
        assert passwords.verify("not-a-hash", "Admin123!") is False
