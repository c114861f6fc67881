"""
Risk Scoring

Pure functions mapping granted OAuth scopes to a risk level, and the
weighted composite scorer used to compare applications across an
organization.

Nothing in this module touches the database or keeps state between calls:
identical input always yields identical output.
"""

import enum
import math
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AIStatus(str, enum.Enum):
    NONE = "none"
    PARTIAL = "partial"
    NATIVE = "native"


CATEGORIES: Tuple[str, ...] = (
    "data_privacy",
    "security_access",
    "business_impact",
    "ai_governance",
    "vendor_profile",
)

_RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}

# Identity-only scopes; checked before any other pattern
LOW_RISK_SCOPES = frozenset({
    "openid",
    "profile",
    "email",
    "offline_access",
    "user.read",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/plus.me",
})

# Microsoft Graph permission fragments
HIGH_RISK_PATTERNS: Tuple[str, ...] = (
    "ReadWrite.All",
    "Write.All",
    ".ReadWrite",
    ".Write",
    "FullControl.All",
    "AccessAsUser.All",
    "Directory.ReadWrite",
    "Files.ReadWrite",
    "Mail.ReadWrite",
    "Mail.Send",
    "Group.ReadWrite",
    "User.ReadWrite",
    "Application.ReadWrite",
    "Sites.FullControl",
    "User.Export",
    "User.Invite",
    "User.ManageIdentities",
    "User.EnableDisableAccount",
    "DelegatedPermissionGrant.ReadWrite",
)

MEDIUM_RISK_PATTERNS: Tuple[str, ...] = (
    "Read.All",
    ".Read",
    "Directory.Read",
    "Files.Read",
    "User.Read.All",
    "Mail.Read",
    "AuditLog.Read",
    "Reports.Read",
    "Sites.Read",
)

# Google scope URLs: full access to mail, files, admin and directory data
GOOGLE_HIGH_RISK = re.compile(
    r"(auth/admin\.(directory|datatransfer|reports)(?!.*\.readonly)"
    r"|auth/cloud-platform$"
    r"|auth/drive$|auth/drive\.file$|auth/drive\.appdata$"
    r"|auth/gmail\.(send|modify|compose|insert|settings)"
    r"|mail\.google\.com"
    r"|auth/(calendar|contacts|spreadsheets|documents|presentations|forms)$"
    r"|auth/apps\.)"
)
GOOGLE_MEDIUM_RISK = re.compile(r"\.readonly$|auth/gmail\.metadata$|auth/directory\.")

APP_ROLE_PREFIX = "AppRole:"


def classify_scope(scope: str) -> RiskLevel:
    """Classify a single granted scope. Total: unknown scopes are LOW."""
    if not scope:
        return RiskLevel.LOW
    value = scope.strip()
    lowered = value.lower()

    if lowered in LOW_RISK_SCOPES:
        return RiskLevel.LOW

    # App roles carry Graph-style role values after the prefix
    if value.startswith(APP_ROLE_PREFIX):
        value = value[len(APP_ROLE_PREFIX):].strip()
        if value.lower() in LOW_RISK_SCOPES:
            return RiskLevel.LOW

    if "googleapis.com/" in lowered or "mail.google.com" in lowered:
        if GOOGLE_HIGH_RISK.search(lowered):
            return RiskLevel.HIGH
        if GOOGLE_MEDIUM_RISK.search(lowered):
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    for pattern in HIGH_RISK_PATTERNS:
        if pattern in value:
            return RiskLevel.HIGH
    for pattern in MEDIUM_RISK_PATTERNS:
        if pattern in value:
            return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    permission_count: int

    def to_dict(self) -> Dict[str, Union[str, int]]:
        return {"level": self.level.value, "permissionCount": self.permission_count}


def compute_risk_level(scopes: Iterable[str]) -> RiskAssessment:
    """
    Map a scope collection to its risk level and permission count.

    HIGH if any scope is high risk, MEDIUM if any is medium risk, LOW
    otherwise. Duplicates and surrounding whitespace are ignored.
    """
    unique = {s.strip() for s in scopes if s and s.strip()}
    level = RiskLevel.LOW
    for scope in unique:
        scope_level = classify_scope(scope)
        if _RISK_ORDER[scope_level] > _RISK_ORDER[level]:
            level = scope_level
            if level is RiskLevel.HIGH:
                break
    return RiskAssessment(level=level, permission_count=len(unique))


def normalize_risk_level(value: Union[str, RiskLevel, None]) -> RiskLevel:
    """Accept 'high', 'High', 'HIGH' and RiskLevel members; None means MEDIUM."""
    if isinstance(value, RiskLevel):
        return value
    if not value:
        return RiskLevel.MEDIUM
    return RiskLevel(str(value).strip().upper())


def parse_ai_status(value: Union[str, AIStatus, None]) -> AIStatus:
    """Map free-text AI capability descriptions onto none/partial/native."""
    if isinstance(value, AIStatus):
        return value
    status = (value or "").strip().lower()
    if "partial" in status:
        return AIStatus.PARTIAL
    if status in ("", "none") or status.startswith("no") or "not applicable" in status:
        return AIStatus.NONE
    if "genai" in status or "native" in status or "yes" in status:
        return AIStatus.NATIVE
    return AIStatus.NONE


def scope_risk_from_score(score: float) -> RiskLevel:
    if score >= 4.0:
        return RiskLevel.HIGH
    if score >= 2.5:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class CategoryWeights(BaseModel):
    """Percent weight of each rubric category. Must sum to 100."""
    data_privacy: float = Field(20, ge=0)
    security_access: float = Field(25, ge=0)
    business_impact: float = Field(20, ge=0)
    ai_governance: float = Field(15, ge=0)
    vendor_profile: float = Field(20, ge=0)

    @model_validator(mode="after")
    def _check_total(self):
        total = sum(getattr(self, c) for c in CATEGORIES)
        if not math.isclose(total, 100.0, abs_tol=1e-6):
            raise ValueError(f"category weights must sum to 100, got {total:g}")
        return self


class CategoryMultipliers(BaseModel):
    data_privacy: float = 1.0
    security_access: float = 1.0
    business_impact: float = 1.0
    ai_governance: float = 1.0
    vendor_profile: float = 1.0

    @field_validator(*CATEGORIES)
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("multipliers must be positive")
        return value


def _default_ai_multipliers() -> Dict[AIStatus, CategoryMultipliers]:
    return {
        AIStatus.NATIVE: CategoryMultipliers(data_privacy=1.5, security_access=1.8, business_impact=1.3,
                                             ai_governance=2.0, vendor_profile=1.2),
        AIStatus.PARTIAL: CategoryMultipliers(data_privacy=1.2, security_access=1.4, business_impact=1.1,
                                              ai_governance=1.5, vendor_profile=1.1),
        AIStatus.NONE: CategoryMultipliers(),
    }


def _default_scope_multipliers() -> Dict[RiskLevel, CategoryMultipliers]:
    return {
        RiskLevel.HIGH: CategoryMultipliers(data_privacy=1.8, security_access=2.0, business_impact=1.4,
                                            ai_governance=1.6, vendor_profile=1.3),
        RiskLevel.MEDIUM: CategoryMultipliers(data_privacy=1.3, security_access=1.5, business_impact=1.2,
                                              ai_governance=1.2, vendor_profile=1.1),
        RiskLevel.LOW: CategoryMultipliers(),
    }


class RiskScoringConfig(BaseModel):
    """Organization-level scoring configuration with validated invariants."""
    weights: CategoryWeights = Field(default_factory=CategoryWeights)
    ai_multipliers: Dict[AIStatus, CategoryMultipliers] = Field(default_factory=_default_ai_multipliers)
    scope_multipliers: Dict[RiskLevel, CategoryMultipliers] = Field(default_factory=_default_scope_multipliers)

    @model_validator(mode="after")
    def _complete(self):
        missing_ai = set(AIStatus) - set(self.ai_multipliers)
        missing_scope = set(RiskLevel) - set(self.scope_multipliers)
        if missing_ai or missing_scope:
            raise ValueError(
                f"multipliers missing for {sorted(m.value for m in missing_ai | missing_scope)}"
            )
        return self

    @classmethod
    def from_stored(cls, bucket_weights: Optional[Mapping] = None,
                    ai_multipliers: Optional[Mapping] = None,
                    scope_multipliers: Optional[Mapping] = None) -> "RiskScoringConfig":
        """
        Build from the camelCase JSON documents kept in organization_settings.
        Statuses and levels missing from a stored document keep their defaults.
        """
        data = {}
        if bucket_weights:
            data["weights"] = CategoryWeights(**_snake_keys(bucket_weights))
        if ai_multipliers:
            merged = _default_ai_multipliers()
            merged.update({
                AIStatus(k.lower()): CategoryMultipliers(**_snake_keys(v)) for k, v in ai_multipliers.items()
            })
            data["ai_multipliers"] = merged
        if scope_multipliers:
            merged = _default_scope_multipliers()
            merged.update({
                RiskLevel(k.upper()): CategoryMultipliers(**_snake_keys(v)) for k, v in scope_multipliers.items()
            })
            data["scope_multipliers"] = merged
        return cls(**data)


def _snake_keys(values: Mapping) -> Dict[str, float]:
    return {re.sub(r"(?<!^)(?=[A-Z])", "_", k).lower(): v for k, v in values.items()}


DEFAULT_SCORING_CONFIG = RiskScoringConfig()


def compute_composite_score(
    category_averages: Mapping[str, Optional[float]],
    ai_status: Union[str, AIStatus, None],
    scope_risk: Union[str, RiskLevel, None],
    weights: Optional[CategoryWeights] = None,
    config: Optional[RiskScoringConfig] = None,
) -> float:
    """
    Weighted composite risk score for cross-application comparison.

    Each category average (0-5) is weighted as ``avg * weight / 100 * 2``.
    The final score is ``base * ai_amplification * scope_amplification``
    rounded to two decimals, where the amplifications are the ratios of
    the AI-weighted and scope-weighted sums to their predecessors (1.0 when
    the denominator is zero).

    Args:
        category_averages: Sub-scores keyed by category name; missing keys count as 0
        ai_status: none/partial/native or free text parsed by parse_ai_status
        scope_risk: LOW/MEDIUM/HIGH in any casing
        weights: Overrides config.weights when given
        config: Scoring configuration, defaults to DEFAULT_SCORING_CONFIG
    """
    config = config or DEFAULT_SCORING_CONFIG
    weights = weights or config.weights
    ai_mult = config.ai_multipliers[parse_ai_status(ai_status)]
    scope_mult = config.scope_multipliers[normalize_risk_level(scope_risk)]

    base_score = 0.0
    ai_score = 0.0
    scope_score = 0.0
    for category in CATEGORIES:
        raw = category_averages.get(category)
        average = float(raw) if raw is not None else 0.0
        if average < 0 or average > 5:
            raise ValueError(f"{category} average must be between 0 and 5, got {average}")
        weighted = average * (getattr(weights, category) / 100) * 2
        base_score += weighted
        ai_score += weighted * getattr(ai_mult, category)
        scope_score += weighted * getattr(ai_mult, category) * getattr(scope_mult, category)

    ai_amplification = ai_score / base_score if base_score > 0 else 1.0
    scope_amplification = scope_score / ai_score if ai_score > 0 else 1.0
    return round(base_score * ai_amplification * scope_amplification, 2)


def blast_radius(user_count: int, score: float) -> float:
    """Organizational exposure of an application: users times risk score."""
    return round(user_count * score, 2)
