"""Pure text analysis over customer briefs.

Classification is table driven: every rule is a ``(pattern, category, weight)``
triple, scores are summed per category and the highest score wins. A tie at
the top, or no match at all, yields the caller's default category.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
import re
import unicodedata

from app.domain.models import QuizSnapshot

_UPPER = "A-ZÁÉÍÓÚÂÊÔÇÃÕÀ"
_LOWER = "a-záéíóúâêôçãõà"
NAME_TOKEN = rf"[{_UPPER}][{_LOWER}]+(?:-[{_UPPER}][{_LOWER}]+)?"
_NAME_RUN_RE = re.compile(rf"(?<![\w-]){NAME_TOKEN}(?:\s+{NAME_TOKEN})*")


@dataclass(frozen=True)
class ScoringRule:
    pattern: re.Pattern[str]
    category: str
    weight: int = 1


def rule(pattern: str, category: str, weight: int = 1) -> ScoringRule:
    return ScoringRule(pattern=re.compile(pattern, re.IGNORECASE), category=category, weight=weight)


def keyword_rules(keywords: Iterable[str], category: str, weight: int = 1) -> tuple[ScoringRule, ...]:
    return tuple(rule(rf"(?<!\w){re.escape(keyword)}(?!\w)", category, weight) for keyword in keywords)


def score_categories(text: str, rules: Sequence[ScoringRule]) -> dict[str, int]:
    scores: dict[str, int] = {}
    if not text:
        return scores
    for item in rules:
        matches = len(item.pattern.findall(text))
        if matches:
            scores[item.category] = scores.get(item.category, 0) + matches * item.weight
    return scores


def classify(text: str, rules: Sequence[ScoringRule], *, default: str) -> str:
    scores = score_categories(text, rules)
    if not scores:
        return default
    best = max(scores.values())
    leaders = [category for category, score in scores.items() if score == best]
    if len(leaders) != 1:
        return default
    return leaders[0]


WOMAN_RELATIONSHIP_KEYWORDS = (
    "esposa", "mulher", "namorada", "noiva", "companheira", "parceira",
    "mãe", "mãezinha", "mamãe", "mamã", "mamae",
    "filha", "filhinha",
    "irmã", "irmãzinha", "irmazinha",
    "avó", "avozinha", "vovó", "vovozinha",
    "tia", "tiazinha",
    "sobrinha", "prima", "cunhada", "nora", "sogra", "sogrinha",
    "amiga", "amiguinha",
)

MAN_RELATIONSHIP_KEYWORDS = (
    "esposo", "marido", "namorado", "noivo", "companheiro", "parceiro",
    "pai", "paizinho", "papai", "papá",
    "filho", "filhinho",
    "irmão", "irmãozinho",
    "avô", "avôzinho", "vovô", "vovôzinho",
    "tio", "tiozinho",
    "sobrinho", "primo", "cunhado", "genro", "sogro", "sogrinho",
    "amigo", "amiguinho",
)

ADDRESSEE_GENDER_RULES: tuple[ScoringRule, ...] = (
    keyword_rules(WOMAN_RELATIONSHIP_KEYWORDS, "female") + keyword_rules(MAN_RELATIONSHIP_KEYWORDS, "male")
)

AUTHOR_GENDER_RULES: tuple[ScoringRule, ...] = keyword_rules(
    (
        "sou mãe", "sou mae", "sou a mãe", "sou sua mãe", "sou sua mae",
        "sou esposa", "sou sua esposa", "sou a esposa",
        "sou namorada", "sou sua namorada", "sou a namorada",
        "sou noiva", "sou sua noiva",
        "sou filha", "sou tia", "sou madrinha",
        "grata", "obrigada", "apaixonada",
    ),
    "woman",
    weight=2,
) + keyword_rules(
    (
        "sou pai", "sou o pai", "sou seu pai",
        "sou marido", "sou seu marido", "sou o marido",
        "sou namorado", "sou seu namorado", "sou o namorado",
        "sou noivo", "sou seu noivo",
        "sou filho", "sou tio", "sou padrinho",
        "sou esposo", "sou seu esposo",
        "grato", "obrigado", "apaixonado",
    ),
    "man",
    weight=2,
)

COLLECTIVE_TERMS = (
    "amigos", "amigas", "filhos", "filhas", "família", "familia",
    "irmãos", "irmãs", "irmas", "pais", "mães", "maes",
    "netos", "netas", "sobrinhos", "sobrinhas", "primos", "primas",
    "cunhados", "cunhadas", "genros", "noras", "tios", "tias",
    "avós", "avôs", "avos", "vovós", "vovôs", "vovos",
)
COLLECTIVE_RULES: tuple[ScoringRule, ...] = keyword_rules(COLLECTIVE_TERMS, "collective")

# Words that look like names when capitalized but never are.
COMMON_WORDS = frozenset(
    word.upper()
    for word in (
        "sobre", "quem", "relacionamento", "ocasião", "qualidades", "momentos",
        "memórias", "mensagem", "principal", "especiais", "história", "estilo",
        "verso", "pré-refrão", "refrão", "ponte", "final",
        "esposo", "esposa", "marido", "mulher", "namorado", "namorada", "noivo", "noiva",
        "companheiro", "companheira", "parceiro", "parceira", "amigo", "amiga", "colega",
        "mãe", "pai", "filho", "filha", "avó", "avô", "vovó", "vovô", "tio", "tia",
        "deus", "senhor", "jesus",
        "eu", "ela", "ele", "elas", "eles", "você", "vocês", "nós", "meu", "minha",
        "meus", "minhas", "nosso", "nossa", "seu", "sua", "quando", "como", "mas",
        "que", "porque", "sempre", "hoje", "obrigado", "obrigada", "feliz", "parabéns",
        "amor", "querido", "querida", "aniversário", "natal", "casamento",
    )
) | frozenset(word.upper() for word in COLLECTIVE_TERMS)

STOPWORDS = frozenset(
    ("E", "A", "O", "DE", "DA", "DO", "DOS", "DAS", "EM", "NO", "NA", "NOS", "NAS", "PARA", "COM", "POR")
)


@dataclass(frozen=True)
class BriefAnalysis:
    addressee_gender: str
    author_gender: str
    collective: bool
    honored_names: tuple[str, ...]
    names: tuple[str, ...]


def fold(text: str) -> str:
    """Lowercase and strip diacritics."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char)).lower()


def _is_name_word(word: str) -> bool:
    upper = word.upper()
    return len(word) > 2 and upper not in COMMON_WORDS and upper not in STOPWORDS


def extract_names(text: str | None) -> list[str]:
    if not text:
        return []
    names: list[str] = []
    for match in _NAME_RUN_RE.finditer(text):
        run: list[str] = []
        for word in match.group(0).split():
            if _is_name_word(word):
                run.append(word)
                continue
            if run:
                names.append(" ".join(run))
                run = []
        if run:
            names.append(" ".join(run))
    unique: list[str] = []
    for name in names:
        if name not in unique:
            unique.append(name)
    return unique


def detect_addressee_gender(relationship: str | None) -> str:
    return classify(relationship or "", ADDRESSEE_GENDER_RULES, default="neutral")


def detect_author_gender(text: str) -> str:
    return classify(text, AUTHOR_GENDER_RULES, default="unknown")


def is_collective_addressee(about_who: str | None) -> bool:
    if not about_who:
        return False
    if score_categories(about_who, COLLECTIVE_RULES):
        return True
    has_separator = "," in about_who or re.search(rf"\be\s+[{_UPPER}]", about_who) is not None
    return has_separator and len(extract_names(about_who)) >= 2


def analyze_brief(quiz: QuizSnapshot) -> BriefAnalysis:
    brief = quiz.brief_text()
    # Relationship words are never names.
    name_source = "\n".join(
        part
        for part in (quiz.about_who, quiz.occasion, quiz.message, quiz.qualities, quiz.memories, quiz.key_moments)
        if part
    )
    return BriefAnalysis(
        addressee_gender=detect_addressee_gender(quiz.relationship),
        author_gender=detect_author_gender(brief),
        collective=is_collective_addressee(quiz.about_who),
        honored_names=tuple(extract_names(quiz.about_who)),
        names=tuple(extract_names(name_source)),
    )
