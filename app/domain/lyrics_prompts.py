from __future__ import annotations

from collections.abc import Sequence

from app.domain.lyrics_validation import REQUIRED_SECTION_LABELS
from app.domain.models import QuizSnapshot
from app.domain.text_analysis import BriefAnalysis

SYSTEM_PROMPT = (
    "Você é um compositor brasileiro que escreve letras de música personalizadas. "
    "Responda somente com um objeto JSON no formato "
    '{"title": "<título>", "lyrics": "<letra completa>"}, sem texto fora do JSON.'
)

_RULE_HINTS: dict[str, str] = {
    "missing_section": "inclua todas as seções obrigatórias, cada uma com seu cabeçalho entre colchetes",
    "section_order": "mantenha as seções exatamente na ordem pedida",
    "banned_term": "remova o termo proibido",
    "name_outside_chorus": "o nome homenageado só pode aparecer nos refrões",
    "name_missing_in_chorus": "cite o nome homenageado pelo menos uma vez no refrão",
    "missing_name": "inclua o nome citado no briefing",
    "third_person": "fale diretamente com a pessoa homenageada (você), nunca em terceira pessoa",
    "word_list": "escreva frases completas em vez de listas de palavras separadas por vírgula",
    "informal_term": "não use gírias ou abreviações que não estejam no briefing",
    "singular_address_collective": "a música é para um grupo: use vocês, nunca você",
    "unparseable_output": "responda apenas com o JSON pedido",
    "upstream_error": "responda apenas com o JSON pedido",
}


def _perspective(analysis: BriefAnalysis) -> str:
    if analysis.collective:
        return "A música é dirigida a um grupo de pessoas; use a segunda pessoa do plural (vocês)."
    gender = {
        "female": "uma mulher",
        "male": "um homem",
    }.get(analysis.addressee_gender, "a pessoa homenageada")
    return f"A música fala diretamente com {gender}, sempre na segunda pessoa (você)."


def build_user_prompt(quiz: QuizSnapshot, analysis: BriefAnalysis) -> str:
    lines = [
        f"Para quem: {quiz.about_who}",
        f"Estilo musical: {quiz.style}",
    ]
    optional = (
        ("Relação", quiz.relationship),
        ("Ocasião", quiz.occasion),
        ("Tom desejado", quiz.desired_tone),
        ("Mensagem", quiz.message),
        ("Qualidades", quiz.qualities),
        ("Memórias", quiz.memories),
        ("Momentos marcantes", quiz.key_moments),
    )
    lines.extend(f"{label}: {value}" for label, value in optional if value)
    lines.append("")
    lines.append(_perspective(analysis))
    if analysis.author_gender in ("woman", "man"):
        author = "uma mulher" if analysis.author_gender == "woman" else "um homem"
        lines.append(f"Quem canta a homenagem é {author}; concorde os adjetivos em primeira pessoa.")
    if analysis.honored_names:
        names = ", ".join(analysis.honored_names)
        lines.append(f"Nomes homenageados (somente nos refrões, pelo menos uma vez): {names}.")
    other_names = [name for name in analysis.names if name not in analysis.honored_names]
    if other_names:
        lines.append(f"Nomes que precisam aparecer na letra: {', '.join(other_names)}.")
    lines.append("")
    lines.append("Estrutura obrigatória, nesta ordem: " + " ".join(REQUIRED_SECTION_LABELS))
    lines.append(f"Idioma: {quiz.language}.")
    return "\n".join(lines)


def build_corrective_instruction(errors: Sequence[str]) -> str:
    """Describe each violation of the previous attempt so the next one can fix it."""
    bullets: list[str] = []
    for error in errors:
        rule, _, detail = error.partition(":")
        hint = _RULE_HINTS.get(rule, "corrija este problema")
        bullets.append(f"- {error}: {hint}" + (f" ({detail})" if detail else ""))
    return "A versão anterior violou as regras abaixo. Corrija todas:\n" + "\n".join(bullets)
