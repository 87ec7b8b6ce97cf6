"""
Multilingual Pattern Definitions for the Legal Chatbot

Follow-up detection patterns and user-facing labels organized by language.
Modules import from here instead of defining patterns inline.
"""

import re

# =============================================================================
# Follow-up Question Detection
# =============================================================================

# Questions this short are treated as follow-ups regardless of wording
FOLLOWUP_MAX_WORDS = 5

FOLLOWUP_PATTERNS = {
    "nl": [
        r"^(wat|welke|hoe|wanneer|waar|wie|waarom)\s+(zijn|is|moet|kan|mag)\s+(die|dat|deze|dit|ze|het)",
        r"^(en|maar|of|dus)\s",
        r"^(meer|verder|specifiek|detail)",
        r"\b(die|dat|deze|dit|ervan|erbij|erover|hierover|daarover)\b",
        r"^(leg uit|vertel meer|geef meer|kun je|kunt u)",
        r"^(wat bedoel|wat betekent|wat houdt)",
        r"\b(de regels|de wet|de voorwaarden|de procedure)\b",
    ],
    "fr": [
        r"^(qu'est-ce|quelles?|comment|quand|où|qui|pourquoi)\s+(sont|est|dois|peut|faut)\s+(ces?|cette?|cela|ça)",
        r"^(et|mais|ou|donc)\s",
        r"^(plus|encore|spécifiquement|en détail)",
        r"\b(ces?|cette?|cela|ça|en|y|là-dessus)\b",
        r"^(expliquez|dites-moi|donnez-moi|pouvez-vous)",
        r"^(que signifie|qu'entendez|que veut dire)",
        r"\b(les règles|la loi|les conditions|la procédure)\b",
    ],
}

# Compiled once; follow-up detection checks both languages because users
# regularly switch language mid-conversation.
COMPILED_FOLLOWUP_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for patterns in FOLLOWUP_PATTERNS.values()
    for pattern in patterns
]

# Words shorter than this are ignored when carrying a topic into a follow-up
TOPIC_WORD_MIN_LENGTH = 5
TOPIC_WORDS_MAX = 5

# =============================================================================
# UI Labels and Messages
# =============================================================================

LABELS = {
    "nl": {
        "role_user": "Gebruiker",
        "role_assistant": "Assistent",
        "source_legislation": "Wetgeving",
        "source_jurisprudence": "Rechtspraak",
        "source_parliamentary": "Parlementaire voorbereiding",
        "source_all": "Alle bronnen",
        "progress_start": "Vraag ontvangen",
        "progress_searching": "Zoeken in {sources}",
        "progress_merging": "Resultaten samenvoegen",
        "error_question_required": "Vraag is verplicht",
        "error_question_too_long": "Vraag is te lang (maximaal {limit} tekens)",
        "error_language": "Taal moet nl of fr zijn",
        "error_source": "Bron moet legislation, jurisprudence, parliamentary of all zijn",
        "error_all_failed": "Alle bronnen faalden: {details}",
        "error_internal": "Internal server error",
    },
    "fr": {
        "role_user": "Utilisateur",
        "role_assistant": "Assistant",
        "source_legislation": "Législation",
        "source_jurisprudence": "Jurisprudence",
        "source_parliamentary": "Travaux parlementaires",
        "source_all": "Toutes les sources",
        "progress_start": "Question reçue",
        "progress_searching": "Recherche dans {sources}",
        "progress_merging": "Fusion des résultats",
        "error_question_required": "La question est obligatoire",
        "error_question_too_long": "La question est trop longue (maximum {limit} caractères)",
        "error_language": "La langue doit être nl ou fr",
        "error_source": "La source doit être legislation, jurisprudence, parliamentary ou all",
        "error_all_failed": "Toutes les sources ont échoué : {details}",
        "error_internal": "Internal server error",
    },
}
