from __future__ import annotations

from dataclasses import dataclass, field
import re

from app.domain.text_analysis import BriefAnalysis, fold

# Section header -> section type. Keys are accent-folded and lowercased.
SECTION_ALIASES: dict[str, str] = {
    "verso": "verse",
    "verse": "verse",
    "pre-refrao": "pre_chorus",
    "pre refrao": "pre_chorus",
    "pre-chorus": "pre_chorus",
    "pre chorus": "pre_chorus",
    "refrao": "chorus",
    "chorus": "chorus",
    "ponte": "bridge",
    "bridge": "bridge",
    "refrao final": "final_chorus",
    "final chorus": "final_chorus",
}

REQUIRED_SECTION_ORDER: tuple[str, ...] = (
    "verse",
    "pre_chorus",
    "chorus",
    "verse",
    "verse",
    "pre_chorus",
    "chorus",
    "bridge",
    "final_chorus",
)

REQUIRED_SECTION_LABELS: tuple[str, ...] = (
    "[Verso 1]",
    "[Pré-Refrão]",
    "[Refrão]",
    "[Verso 2]",
    "[Verso 3]",
    "[Pré-Refrão]",
    "[Refrão]",
    "[Ponte]",
    "[Refrão Final]",
)

CHORUS_SECTION_TYPES = frozenset({"chorus", "final_chorus"})

BANNED_TERMS = ("xonei", "xonado", "xone", "xona")
CONDITIONAL_BANNED_TERMS = ("amante",)

INFORMAL_TERMS = (
    "vc", "vcs", "pq", "tb", "tbm", "blz", "tá", "né", "pra", "pro", "pros", "pras",
    "naum", "nao", "mt", "mtos", "mtas", "td", "tds", "tdas", "hj", "amanha",
    "cmg", "ctg", "cm", "dps", "vlw", "obg", "obgd", "obgda", "pf", "pfv", "pfvr",
    "tmj", "flw", "eh",
)

THIRD_PERSON_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:ela|ele)\s+(?:é|foi|será|está|estava|seria)\b", re.IGNORECASE),
    re.compile(r"\b(?:dela|dele)\s+(?:eu|me|minha|meu)\b", re.IGNORECASE),
    re.compile(r"\b(?:ela|ele)\s+me\s+(?:ensinou|mostrou|deu|trouxe)\b", re.IGNORECASE),
)

# A line ending in three or more capitalized words separated by commas.
WORD_LIST_PATTERN = re.compile(
    r"(?:[A-ZÁÉÍÓÚÂÊÔÇ][\wÀ-ÿ]+\s*,\s*){2,}(?:e\s+)?[A-ZÁÉÍÓÚÂÊÔÇ][\wÀ-ÿ]+\s*[.!]?\s*$",
    re.MULTILINE,
)

SINGULAR_ADDRESS_PATTERN = re.compile(r"\bvocê\b(?!s)", re.IGNORECASE)
COLLECTIVE_MARKERS = (
    "vocês", "meus filhos", "minhas filhas", "nós", "cada um de vocês",
    "todos vocês", "todas vocês", "meus amores", "minhas vidas",
)

_HEADER_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_HEADER_NUMBER_RE = re.compile(r"\s*\d+\s*$")


@dataclass(frozen=True)
class LyricsSection:
    label: str
    kind: str | None
    text: str


@dataclass(frozen=True)
class ValidationReport:
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    sections: tuple[str, ...] = field(default_factory=tuple)

    @property
    def valid(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "sections": list(self.sections),
        }


def section_kind(label: str) -> str | None:
    key = _HEADER_NUMBER_RE.sub("", fold(label)).strip()
    return SECTION_ALIASES.get(key)


def parse_sections(lyrics: str) -> list[LyricsSection]:
    sections: list[LyricsSection] = []
    label: str | None = None
    lines: list[str] = []
    for line in lyrics.splitlines():
        header = _HEADER_RE.match(line)
        if header is None:
            if label is not None:
                lines.append(line)
            continue
        if label is not None:
            sections.append(LyricsSection(label=label, kind=section_kind(label), text="\n".join(lines).strip()))
        label = header.group(1).strip()
        lines = []
    if label is not None:
        sections.append(LyricsSection(label=label, kind=section_kind(label), text="\n".join(lines).strip()))
    return sections


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(word)}(?!\w)", text, re.IGNORECASE) is not None


def _check_structure(sections: list[LyricsSection]) -> list[str]:
    kinds = [section.kind for section in sections if section.kind is not None]
    errors: list[str] = []
    for kind in dict.fromkeys(REQUIRED_SECTION_ORDER):
        if kinds.count(kind) < REQUIRED_SECTION_ORDER.count(kind):
            errors.append(f"missing_section:{kind}")
    if not errors and tuple(kinds) != REQUIRED_SECTION_ORDER:
        errors.append("section_order")
    return errors


def _check_banned(lyrics: str, brief: str) -> list[str]:
    folded = fold(lyrics)
    errors = [f"banned_term:{term}" for term in BANNED_TERMS if _contains_word(folded, term)]
    for term in CONDITIONAL_BANNED_TERMS:
        if _contains_word(folded, term) and not _contains_word(fold(brief), term):
            errors.append(f"banned_term:{term}")
    return errors


def _check_names(sections: list[LyricsSection], lyrics: str, analysis: BriefAnalysis) -> list[str]:
    errors: list[str] = []
    chorus_text = "\n".join(section.text for section in sections if section.kind in CHORUS_SECTION_TYPES)
    other_text = "\n".join(section.text for section in sections if section.kind not in CHORUS_SECTION_TYPES)
    for name in analysis.honored_names:
        if _contains_word(other_text, name):
            errors.append(f"name_outside_chorus:{name}")
        if not _contains_word(chorus_text, name):
            errors.append(f"name_missing_in_chorus:{name}")
    for name in analysis.names:
        if name in analysis.honored_names:
            continue
        if not _contains_word(lyrics, name):
            errors.append(f"missing_name:{name}")
    return errors


def _check_third_person(lyrics: str) -> list[str]:
    errors: list[str] = []
    for pattern in THIRD_PERSON_PATTERNS:
        for match in pattern.finditer(lyrics):
            code = f"third_person:{match.group(0).lower()}"
            if code not in errors:
                errors.append(code)
    return errors


def _check_informal_terms(lyrics: str, brief: str) -> list[str]:
    # Only terms the customer used verbatim are allowed.
    return [
        f"informal_term:{term}"
        for term in INFORMAL_TERMS
        if _contains_word(lyrics, term) and not _contains_word(brief, term)
    ]


def _check_collective(sections: list[LyricsSection], analysis: BriefAnalysis) -> tuple[list[str], list[str]]:
    if not analysis.collective:
        return [], []
    errors: list[str] = []
    warnings: list[str] = []
    chorus_text = "\n".join(section.text for section in sections if section.kind in CHORUS_SECTION_TYPES)
    if SINGULAR_ADDRESS_PATTERN.search(chorus_text):
        errors.append("singular_address_collective")
    if not any(_contains_word(chorus_text, marker) for marker in COLLECTIVE_MARKERS):
        warnings.append("collective_markers_missing")
    named = [name for name in analysis.honored_names if _contains_word(chorus_text, name)]
    if len(analysis.honored_names) > 1 and len(named) == 1:
        warnings.append("collective_chorus_single_name")
    return errors, warnings


def validate_lyrics(lyrics: str, *, brief: str, analysis: BriefAnalysis) -> ValidationReport:
    sections = parse_sections(lyrics)
    errors: list[str] = []
    errors.extend(_check_structure(sections))
    errors.extend(_check_banned(lyrics, brief))
    errors.extend(_check_names(sections, lyrics, analysis))
    errors.extend(_check_third_person(lyrics))
    if WORD_LIST_PATTERN.search(lyrics):
        errors.append("word_list")
    errors.extend(_check_informal_terms(lyrics, brief))
    collective_errors, warnings = _check_collective(sections, analysis)
    errors.extend(collective_errors)
    return ValidationReport(
        errors=tuple(errors),
        warnings=tuple(warnings),
        sections=tuple(section.kind or section.label for section in sections),
    )
