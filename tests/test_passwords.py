"""Tests for password composition rules and strength scoring."""

import json

import pytest

from bastion.config import PasswordPolicy
from bastion.service.passwords import PasswordPolicyEvaluator, sha1_upper


@pytest.fixture
def evaluator():
    return PasswordPolicyEvaluator(PasswordPolicy())


class TestComposition:
    def test_strong_password_passes(self, evaluator):
        report = evaluator.evaluate("Tr0ub4dor&Horse!Zq")
        assert report.valid
        assert report.errors == []

    def test_collects_every_violation(self, evaluator):
        report = evaluator.evaluate("abc")
        assert not report.valid
        assert "Password must be at least 12 characters long" in report.errors
        assert "Password must contain at least one uppercase letter" in report.errors
        assert "Password must contain at least one number" in report.errors
        assert "Password must contain at least one special character" in report.errors
        assert "Password must contain at least 8 unique characters" in report.errors

    def test_too_long(self, evaluator):
        report = evaluator.evaluate("Aa1!" + "x" * 200)
        assert "Password must not exceed 128 characters" in report.errors

    def test_common_password_rejected_case_insensitively(self, evaluator):
        assert evaluator.is_common("PassWord123")
        report = evaluator.evaluate("Password123")
        assert "Password is too common, please choose a more unique password" in report.errors

    def test_breached_hash_matches_exact_password(self, evaluator):
        assert evaluator.is_breached("PASSWORD")
        assert not evaluator.is_breached("Tr0ub4dor&Horse!Zq")

    def test_personal_information_rejected(self, evaluator):
        report = evaluator.evaluate(
            "Alice!Wonder1987x",
            name="Alice Wonder",
            email="awonder@example.com",
            birth_date="1987-04-02",
        )
        assert (
            "Password contains personal information: first name, last name, birth year"
            in report.errors
        )

    def test_email_local_part_detected(self, evaluator):
        found = evaluator.personal_info("Xx#awonder#Yy9", email="awonder@example.com")
        assert found == ["email address"]

    def test_personal_check_can_be_disabled(self):
        evaluator = PasswordPolicyEvaluator(PasswordPolicy(prevent_personal_info=False))
        report = evaluator.evaluate("Alice!Wonder1987x", name="Alice Wonder")
        assert report.valid


class TestStrength:
    def test_very_weak(self, evaluator):
        strength = evaluator.strength("aaa")
        assert strength.score == 0
        assert strength.feedback == "Very weak password"

    def test_good(self, evaluator):
        strength = evaluator.strength("Xk9#mQ2$vL7&pR4!wZ")
        assert strength.score == 7
        assert strength.feedback == "Good password"
        assert strength.percentage == 70

    def test_sequences_and_repeats_cost_points(self, evaluator):
        plain = evaluator.strength("Xk9#mQ2$vL7&pR5%nyTb")
        patterned = evaluator.strength("Xk9#mQ2$vL7&pR123zzz")
        assert plain.score == 8
        assert patterned.score == 6

    def test_weak_password_warns(self, evaluator):
        report = evaluator.evaluate("abcdefgh")
        assert "Password is weak, consider making it stronger" in report.warnings


class TestDenyLists:
    def test_lists_loaded_from_files(self, tmp_path):
        common = tmp_path / "common.json"
        common.write_text(json.dumps(["hunter2hunter2"]))
        breached = tmp_path / "breached.txt"
        breached.write_text(sha1_upper("Corr3ct-Horse!") + "\n")

        policy = PasswordPolicy(
            common_passwords_file=str(common), breached_hashes_file=str(breached)
        )
        evaluator = PasswordPolicyEvaluator.from_policy(policy)
        assert evaluator.is_common("Hunter2Hunter2")
        assert not evaluator.is_common("password")
        assert evaluator.is_breached("Corr3ct-Horse!")
