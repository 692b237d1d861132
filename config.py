"""Environment-driven settings shared by the pipeline services and the CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

PERSONAS: dict[str, str] = {
    "Neutral Scientist": "Adopt a neutral, objective, and strictly scientific tone.",
    "Concise Expert": (
        "Be brief and to the point. Focus on delivering the most critical "
        "information without verbosity."
    ),
    "Detailed Analyst": (
        "Provide in-depth analysis. Explore nuances, methodologies, and potential "
        "implications thoroughly."
    ),
    "Creative Synthesizer": (
        "Identify and highlight novel connections, cross-disciplinary links, and "
        "innovative perspectives found in the literature."
    ),
}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime configuration. Build with Settings.from_env() in production code."""

    llm_provider: str = "openai"
    openai_api_key: str | None = None
    openai_model: str = "gpt-5.2"
    anthropic_api_key: str | None = None
    claude_model: str = "claude-opus-4-6"
    claude_max_tokens: int = 8192
    temperature: float = 0.3
    ai_language: str = "English"
    ai_persona: str = "Neutral Scientist"
    custom_preamble: str = ""
    ai_timeout_seconds: float = 120.0
    request_timeout_seconds: float = 30.0
    ncbi_api_key: str | None = None
    ncbi_email: str | None = None
    knowledge_store_path: str = "knowledge_base.json"
    default_max_articles_to_scan: int = 50
    default_top_n: int = 5
    default_date_range: str = "5"
    default_synthesis_focus: str = "overview"
    default_article_types: tuple[str, ...] = field(
        default=("Randomized Controlled Trial", "Systematic Review")
    )
    auto_save_reports: bool = True

    @classmethod
    def from_env(cls) -> Settings:
        """Read every setting from the process environment."""
        return cls(
            llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-5.2"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            claude_model=os.getenv("CLAUDE_MODEL", "claude-opus-4-6"),
            claude_max_tokens=int(os.getenv("CLAUDE_MAX_TOKENS", "8192")),
            temperature=float(os.getenv("AI_TEMPERATURE", "0.3")),
            ai_language=os.getenv("AI_LANGUAGE", "English"),
            ai_persona=os.getenv("AI_PERSONA", "Neutral Scientist"),
            custom_preamble=os.getenv("AI_CUSTOM_PREAMBLE", ""),
            ai_timeout_seconds=float(os.getenv("AI_TIMEOUT_SECONDS", "120")),
            request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")),
            ncbi_api_key=os.getenv("NCBI_API_KEY") or None,
            ncbi_email=os.getenv("NCBI_EMAIL") or None,
            knowledge_store_path=os.getenv("KNOWLEDGE_STORE_PATH", "knowledge_base.json"),
            default_max_articles_to_scan=int(os.getenv("DEFAULT_MAX_ARTICLES_TO_SCAN", "50")),
            default_top_n=int(os.getenv("DEFAULT_TOP_N", "5")),
            default_date_range=os.getenv("DEFAULT_DATE_RANGE", "5"),
            default_synthesis_focus=os.getenv("DEFAULT_SYNTHESIS_FOCUS", "overview"),
            default_article_types=_env_list(
                "DEFAULT_ARTICLE_TYPES", ("Randomized Controlled Trial", "Systematic Review")
            ),
            auto_save_reports=_env_bool("AUTO_SAVE_REPORTS", True),
        )

    def system_preamble(self) -> str:
        """Language + persona + custom preamble prepended to every system instruction."""
        persona = PERSONAS.get(self.ai_persona, PERSONAS["Neutral Scientist"])
        parts = [f"Your response must be in {self.ai_language}.", persona, self.custom_preamble]
        return " ".join(part.strip() for part in parts if part and part.strip())
