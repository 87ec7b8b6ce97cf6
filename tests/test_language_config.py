"""Tests for LanguageConfig and the localized labels."""

import pytest

from execution.legal_chatbot.language_config import (
    LanguageConfig,
    SUPPORTED_LANGUAGES,
    is_supported_language,
)
from execution.legal_chatbot.language_patterns import LABELS


class TestLanguageConfig:
    """Tests for the LanguageConfig dataclass and factory."""

    def test_dutch_defaults(self):
        config = LanguageConfig.for_language("nl")
        assert config.language == "nl"

    def test_french(self):
        config = LanguageConfig.for_language("fr")
        assert config.language == "fr"

    def test_unsupported_language_falls_back_to_dutch(self):
        assert LanguageConfig.for_language("de").language == "nl"

    @pytest.mark.parametrize("code,expected", [("nl", True), ("fr", True), ("en", False), ("", False)])
    def test_is_supported_language(self, code, expected):
        assert is_supported_language(code) is expected

    def test_label_placeholders(self):
        config = LanguageConfig.for_language("nl")
        assert config.label("error_question_too_long", limit=500) == "Vraag is te lang (maximaal 500 tekens)"

    def test_source_labels(self):
        assert LanguageConfig.for_language("nl").source_label("parliamentary") == "Parlementaire voorbereiding"
        assert LanguageConfig.for_language("fr").source_label("legislation") == "Législation"


class TestLabels:

    def test_every_language_has_labels(self):
        assert set(LABELS) == set(SUPPORTED_LANGUAGES)

    def test_label_sets_match(self):
        assert set(LABELS["nl"]) == set(LABELS["fr"])
