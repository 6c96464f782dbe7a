"""Built-in catalog of known providers and their defaults."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """Static defaults for one known provider."""

    name: str
    display_name: str
    icon: str
    api_endpoint: str
    model: str
    requires_api_key: bool = True
    input_per_1m: float = 0.0
    output_per_1m: float = 0.0


DEFAULT_CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry(
        name="anthropic",
        display_name="Anthropic Claude",
        icon="fas fa-robot",
        api_endpoint="https://api.anthropic.com/v1/messages",
        model="claude-3-sonnet-20240229",
        input_per_1m=10.0,
        output_per_1m=30.0,
    ),
    CatalogEntry(
        name="openai",
        display_name="OpenAI GPT",
        icon="fas fa-brain",
        api_endpoint="https://api.openai.com/v1/chat/completions",
        model="gpt-3.5-turbo",
        input_per_1m=10.0,
        output_per_1m=20.0,
    ),
    CatalogEntry(
        name="google",
        display_name="Google Gemini",
        icon="fab fa-google",
        api_endpoint="https://generativelanguage.googleapis.com/v1beta/models",
        model="gemini-pro",
        input_per_1m=1.0,
        output_per_1m=2.0,
    ),
    CatalogEntry(
        name="ollama",
        display_name="Ollama (Local)",
        icon="fas fa-server",
        api_endpoint="http://localhost:11434/api/generate",
        model="llama2",
        requires_api_key=False,
    ),
)

_CATALOG_BY_NAME = {entry.name: entry for entry in DEFAULT_CATALOG}
GENERIC_ICON = "fas fa-plug"


def catalog_entry(name: str) -> CatalogEntry | None:
    return _CATALOG_BY_NAME.get(name)


def requires_api_key(name: str) -> bool:
    """Providers outside the catalog are assumed to need credentials."""

    entry = _CATALOG_BY_NAME.get(name)
    return True if entry is None else entry.requires_api_key
