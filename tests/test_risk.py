"""Scope classification and composite scoring."""

import pytest
from pydantic import ValidationError

from src.shadow_it_sync.sync.risk import (
    AIStatus,
    CategoryWeights,
    RiskLevel,
    RiskScoringConfig,
    blast_radius,
    classify_scope,
    compute_composite_score,
    compute_risk_level,
    normalize_risk_level,
    parse_ai_status,
    scope_risk_from_score,
)

ALL_FIVES = {
    "data_privacy": 5,
    "security_access": 5,
    "business_impact": 5,
    "ai_governance": 5,
    "vendor_profile": 5,
}


@pytest.mark.parametrize("scope", [
    "openid",
    "profile",
    "email",
    "offline_access",
    "User.Read",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
])
def test_identity_scopes_are_low(scope):
    assert classify_scope(scope) is RiskLevel.LOW


@pytest.mark.parametrize("scope", [
    "Mail.Send",
    "Files.ReadWrite.All",
    "Directory.ReadWrite.All",
    "Sites.FullControl.All",
    "Directory.AccessAsUser.All",
    "AppRole: User.ReadWrite.All",
    "https://www.googleapis.com/auth/admin.directory.user",
    "https://www.googleapis.com/auth/drive",
    "https://mail.google.com/",
    "https://www.googleapis.com/auth/gmail.send",
])
def test_write_and_admin_scopes_are_high(scope):
    assert classify_scope(scope) is RiskLevel.HIGH


@pytest.mark.parametrize("scope", [
    "Mail.Read",
    "Files.Read.All",
    "Directory.Read.All",
    "AuditLog.Read.All",
    "Calendars.Read",
    "https://www.googleapis.com/auth/drive.readonly",
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
])
def test_read_access_to_sensitive_data_is_medium(scope):
    assert classify_scope(scope) is RiskLevel.MEDIUM


def test_unknown_scopes_are_low():
    assert classify_scope("custom.scope.something") is RiskLevel.LOW
    assert classify_scope("") is RiskLevel.LOW


def test_compute_risk_level_takes_the_highest_scope():
    assessment = compute_risk_level(["openid", "Mail.Read", "Mail.Send"])
    assert assessment.level is RiskLevel.HIGH
    assert assessment.permission_count == 3

    assessment = compute_risk_level(["openid", "Files.Read"])
    assert assessment.level is RiskLevel.MEDIUM

    assessment = compute_risk_level([])
    assert assessment.to_dict() == {"level": "LOW", "permissionCount": 0}


def test_compute_risk_level_counts_distinct_scopes():
    assert compute_risk_level(["email", "email", " email "]).permission_count == 1


def test_compute_risk_level_is_pure():
    scopes = ["Mail.Read", "openid", "Files.ReadWrite"]
    before = list(scopes)
    first = compute_risk_level(scopes)
    second = compute_risk_level(list(reversed(scopes)))
    assert first == second
    assert scopes == before


def test_composite_score_without_amplification():
    # 5 * weight / 100 * 2 summed over weights totalling 100
    assert compute_composite_score(ALL_FIVES, "none", "LOW") == 10.0


def test_composite_score_zero_averages():
    zeros = {name: 0 for name in ALL_FIVES}
    assert compute_composite_score(zeros, "native", "HIGH") == 0.0


def test_composite_score_ai_native_amplification():
    # weighted = [2.0, 2.5, 2.0, 1.5, 2.0] times native multipliers
    assert compute_composite_score(ALL_FIVES, AIStatus.NATIVE, "low") == pytest.approx(15.5)


def test_composite_score_native_and_high_scope():
    score = compute_composite_score(ALL_FIVES, "GenAI native", "high")
    assert score == pytest.approx(25.96)


def test_composite_score_missing_categories_count_as_zero():
    score = compute_composite_score({"security_access": 4}, None, None)
    # 4 * 25 / 100 * 2 = 2.0, amplified by the MEDIUM scope multiplier for security
    assert score == pytest.approx(3.0)


def test_composite_score_rejects_out_of_range_average():
    with pytest.raises(ValueError):
        compute_composite_score({"data_privacy": 6}, "none", "LOW")


def test_custom_weights_override_config():
    weights = CategoryWeights(data_privacy=100, security_access=0, business_impact=0,
                              ai_governance=0, vendor_profile=0)
    assert compute_composite_score({"data_privacy": 3}, "none", "LOW", weights=weights) == 6.0


def test_weights_must_sum_to_100():
    with pytest.raises(ValidationError):
        CategoryWeights(data_privacy=50)


def test_multipliers_must_be_positive():
    with pytest.raises(ValidationError):
        RiskScoringConfig.from_stored(ai_multipliers={"native": {"dataPrivacy": 0}})


def test_scoring_config_from_stored_camel_case():
    config = RiskScoringConfig.from_stored(
        bucket_weights={"dataPrivacy": 30, "securityAccess": 30, "businessImpact": 20,
                        "aiGovernance": 10, "vendorProfile": 10},
    )
    assert config.weights.data_privacy == 30
    assert config.ai_multipliers[AIStatus.NATIVE].ai_governance == 2.0


@pytest.mark.parametrize("text,expected", [
    ("GenAI native", AIStatus.NATIVE),
    ("Yes", AIStatus.NATIVE),
    ("Partial", AIStatus.PARTIAL),
    ("No", AIStatus.NONE),
    ("", AIStatus.NONE),
    (None, AIStatus.NONE),
])
def test_parse_ai_status(text, expected):
    assert parse_ai_status(text) is expected


def test_risk_level_helpers():
    assert normalize_risk_level("high") is RiskLevel.HIGH
    assert normalize_risk_level(None) is RiskLevel.MEDIUM
    assert scope_risk_from_score(4.2) is RiskLevel.HIGH
    assert scope_risk_from_score(2.5) is RiskLevel.MEDIUM
    assert scope_risk_from_score(1.0) is RiskLevel.LOW
    assert blast_radius(12, 2.5) == 30.0
