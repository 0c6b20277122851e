from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from consentengine.domain.models import ConsentStatement, ConsentStatementVersion


RECORD_STATUS_GRANTED = "granted"
RECORD_STATUS_DENIED = "denied"
RECORD_STATUS_WITHDRAWN = "withdrawn"
RECORD_STATUS_EXPIRED = "expired"

ACTION_GRANTED = "granted"
ACTION_DENIED = "denied"
ACTION_WITHDRAWN = "withdrawn"
ACTION_VERSION_UPGRADED = "version_upgraded"
ACTION_EXPIRED = "expired"

VERSION_STATUS_DRAFT = "draft"
VERSION_STATUS_ACTIVE = "active"
VERSION_STATUS_ARCHIVED = "archived"

CONTENT_TYPE_URL = "url"
CONTENT_TYPE_INLINE = "inline"

ENFORCEMENT_BLOCK = "block"
ENFORCEMENT_ALLOW_CONTINUE = "allow_continue"
ENFORCEMENT_MODES = frozenset({ENFORCEMENT_BLOCK, ENFORCEMENT_ALLOW_CONTINUE})

CLIENT_REQUIREMENT_REQUIRED = "required"
CLIENT_REQUIREMENT_OPTIONAL = "optional"
CLIENT_REQUIREMENT_HIDDEN = "hidden"
CLIENT_REQUIREMENT_INHERIT = "inherit"
CLIENT_REQUIREMENTS = frozenset(
    {
        CLIENT_REQUIREMENT_REQUIRED,
        CLIENT_REQUIREMENT_OPTIONAL,
        CLIENT_REQUIREMENT_HIDDEN,
        CLIENT_REQUIREMENT_INHERIT,
    }
)

ConsentDecision = Literal["granted", "denied"]
RuleOutcome = Literal["required", "optional", "hidden"]
RuleOperator = Literal["eq", "neq", "in", "not_in", "gt", "gte", "lt", "lte", "exists"]

RULE_OPERATORS: frozenset[str] = frozenset({"eq", "neq", "in", "not_in", "gt", "gte", "lt", "lte", "exists"})
RULE_OUTCOMES: frozenset[str] = frozenset({"required", "optional", "hidden"})


@dataclass(frozen=True)
class ConditionalRule:
    # Claim predicate mapped to a requirement outcome; evaluated in list order.
    claim: str
    operator: RuleOperator
    value: Any
    result: RuleOutcome

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"claim": self.claim, "op": self.operator, "result": self.result}
        if self.operator != "exists":
            payload["value"] = self.value
        return payload


@dataclass(frozen=True)
class ConsentEvidence:
    client_id: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class ResolvedConsentRequirement:
    # Tenant defaults merged with client overrides and rule outcomes for one statement.
    statement_id: str
    statement: ConsentStatement
    current_version: ConsentStatementVersion
    is_required: bool
    min_version: str | None
    enforcement: str
    show_deletion_link: bool
    deletion_url: str | None
    display_order: int


@dataclass(frozen=True)
class SatisfactionResult:
    satisfied: bool
    unsatisfied: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConsentScreenItem:
    statement_id: str
    slug: str
    category: str
    legal_basis: str
    title: str
    description: str
    document_url: str | None
    inline_content: str | None
    version: str
    version_id: str
    is_required: bool
    enforcement: str
    current_status: str | None
    current_version: str | None
    needs_version_upgrade: bool
    show_deletion_link: bool
    deletion_url: str | None
    display_order: int
