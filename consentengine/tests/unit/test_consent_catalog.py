from __future__ import annotations

from types import SimpleNamespace

import pytest

from consentengine.core.config import get_settings
from consentengine.services.consent.catalog import language_fallback_chain, select_localization


def _locs(*languages: str) -> list[SimpleNamespace]:
    return [SimpleNamespace(language=language, title=language.upper()) for language in languages]


def test_fallback_chain_is_deduplicated() -> None:
    assert language_fallback_chain("en", "en") == ["en"]
    assert language_fallback_chain("ja", "de") == ["ja", "de", "en"]
    assert language_fallback_chain(None, "fr") == ["fr", "en"]


def test_default_language_comes_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONSENT_DEFAULT_LANGUAGE", "ko")
    get_settings.cache_clear()
    assert language_fallback_chain("ja") == ["ja", "ko", "en"]


def test_select_localization_walks_the_chain() -> None:
    rows = _locs("de", "en", "ja")
    assert select_localization(rows, "ja", "de").title == "JA"
    assert select_localization(rows, "pt", "de").title == "DE"
    assert select_localization(rows, "pt", "es").title == "EN"


def test_select_localization_falls_back_to_first_row() -> None:
    assert select_localization(_locs("fr", "it"), "ja", "de").title == "FR"
    assert select_localization([], "ja", "de") is None
