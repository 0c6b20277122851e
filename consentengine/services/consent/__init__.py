from __future__ import annotations

from consentengine.services.consent.claims import UNDEFINED, load_user_claims, resolve_claim_value
from consentengine.services.consent.decisions import (
    expire_consent_records,
    list_consent_history,
    list_user_consent_records,
    process_consent_item_decisions,
    withdraw_consent,
)
from consentengine.services.consent.ip_hash import (
    RedisSaltStore,
    SaltStore,
    hash_ip_address,
    provision_ip_salt,
)
from consentengine.services.consent.requirements import (
    check_user_consent_satisfaction,
    resolve_consent_requirements,
)
from consentengine.services.consent.rules import evaluate_conditional_rules, parse_rules
from consentengine.services.consent.screen import get_consent_items_for_screen
from consentengine.services.consent.versioning import (
    activate_version,
    compute_content_hash,
    hash_localized_content,
    validate_version_format,
)


__all__ = [
    "UNDEFINED",
    "RedisSaltStore",
    "SaltStore",
    "activate_version",
    "check_user_consent_satisfaction",
    "compute_content_hash",
    "evaluate_conditional_rules",
    "expire_consent_records",
    "get_consent_items_for_screen",
    "hash_ip_address",
    "hash_localized_content",
    "list_consent_history",
    "list_user_consent_records",
    "load_user_claims",
    "parse_rules",
    "process_consent_item_decisions",
    "provision_ip_salt",
    "resolve_claim_value",
    "resolve_consent_requirements",
    "validate_version_format",
    "withdraw_consent",
]
