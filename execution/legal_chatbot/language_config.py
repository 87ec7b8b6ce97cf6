"""
Language Configuration for the Legal Chatbot

The chatbot answers in Dutch or French. Each language carries its display
name and the default labels used when building localized messages.
"""

from dataclasses import dataclass

from .language_patterns import LABELS


# Supported languages
SUPPORTED_LANGUAGES = {
    "nl": {"name": "Nederlands"},
    "fr": {"name": "Français"},
}

DEFAULT_LANGUAGE = "nl"


def is_supported_language(language: str) -> bool:
    """Check whether a language code is one the chatbot can answer in."""
    return language in SUPPORTED_LANGUAGES


@dataclass
class LanguageConfig:
    """Per-request language settings."""
    language: str = DEFAULT_LANGUAGE

    @classmethod
    def for_language(cls, language: str) -> "LanguageConfig":
        """
        Factory method returning settings for a given language.

        Args:
            language: ISO 639-1 code ("nl" or "fr")

        Returns:
            LanguageConfig, falling back to Dutch for unknown codes
        """
        if language not in SUPPORTED_LANGUAGES:
            language = DEFAULT_LANGUAGE
        return cls(language=language)

    def label(self, key: str, **kwargs) -> str:
        """Look up a localized label and fill in any placeholders."""
        labels = LABELS.get(self.language, LABELS[DEFAULT_LANGUAGE])
        text = labels.get(key) or LABELS[DEFAULT_LANGUAGE][key]
        return text.format(**kwargs) if kwargs else text

    def source_label(self, source: str) -> str:
        """Human-readable name of a legal source in this language."""
        return self.label(f"source_{source}")
