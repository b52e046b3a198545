"""Configuration management for the tax assistant.

Loads settings from YAML config file with Pydantic validation.
Config file location: ~/.taxassist/config.yaml
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field


# === Default paths ===

def get_taxassist_home() -> Path:
    """Get the data directory (~/.taxassist)."""
    return Path(os.environ.get("TAXASSIST_HOME", Path.home() / ".taxassist"))


# === Configuration Models ===


class ProviderConfig(BaseModel):
    """Configuration for a single LLM provider."""

    api_key_env: str | None = None  # Environment variable name for API key
    api_key: str | None = None  # Direct API key (not recommended)
    base_url: str | None = None

    def get_api_key(self) -> str | None:
        """Resolve API key from env var or direct value."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return self.api_key


class ModelsConfig(BaseModel):
    """LLM model configuration."""

    default: str = "openai/gpt-4.1"
    fallback_chain: list[str] = Field(default_factory=list)
    providers: dict[str, ProviderConfig] = Field(default_factory=lambda: {
        "openai": ProviderConfig(api_key_env="OPENAI_API_KEY"),
    })
    temperature: float = 1.0
    top_p: float = 1.0
    max_output_tokens: int = 16384
    store: bool = True


class ContextConfig(BaseModel):
    """Context window budget and tokenizer settings."""

    context_window: int = 1_000_000
    budget_ratio: float = Field(default=0.9, gt=0, le=1)
    tokenizer_model: str = "gpt-4o"
    fallback_encoding: str = "o200k_base"

    @property
    def max_tokens(self) -> int:
        """Hard ceiling for system + user + history tokens."""
        return int(self.context_window * self.budget_ratio)


class S3Config(BaseModel):
    """S3-compatible object storage for conversation history."""

    bucket: str = ""
    prefix: str = "conversation-history/"
    region: str = "us-east-1"
    endpoint_url: str | None = None  # MinIO, LocalStack, ...
    access_key_id_env: str = "TAXASSIST_S3_ACCESS_KEY_ID"
    secret_access_key_env: str = "TAXASSIST_S3_SECRET_ACCESS_KEY"
    init_attempts: int = 3
    init_retry_delay: float = 1.0

    def get_credentials(self) -> tuple[str | None, str | None]:
        """Resolve explicit credentials; (None, None) means ambient IAM."""
        return (
            os.environ.get(self.access_key_id_env),
            os.environ.get(self.secret_access_key_env),
        )


class StorageConfig(BaseModel):
    """Conversation history persistence."""

    backend: Literal["local", "s3"] = "local"
    local_path: str | None = None  # Defaults to ~/.taxassist/history
    fallback_paths: list[str] = Field(default_factory=list)
    s3: S3Config = Field(default_factory=S3Config)

    def get_local_path(self) -> Path:
        if self.local_path:
            return Path(self.local_path).expanduser()
        return get_taxassist_home() / "history"


class ClassifierConfig(BaseModel):
    """Disclaimer classifier settings."""

    enabled: bool = True
    model: str = "openai/gpt-4.1-mini"
    max_retries: int = 2


class UserLocation(BaseModel):
    """Approximate location passed to web search."""

    country: str | None = None
    region: str | None = None
    city: str | None = None


class RetrievalConfig(BaseModel):
    """Hosted retrieval tools attached to every model request."""

    vector_store_ids: list[str] = Field(default_factory=list)
    vector_store_ids_env: str = "OPENAI_VECTOR_STORE_ID"
    web_search: bool = True
    search_context_size: Literal["low", "medium", "high"] = "high"
    user_location: UserLocation = Field(default_factory=UserLocation)

    def get_vector_store_ids(self) -> list[str]:
        if self.vector_store_ids:
            return self.vector_store_ids
        raw = os.environ.get(self.vector_store_ids_env, "")
        return [v.strip() for v in raw.split(",") if v.strip()]


class BotConfig(BaseModel):
    """User-facing text and conversation commands."""

    timezone: str = "UTC"
    restart_command: str = "/restart"
    reset_confirmation: str = "Conversation history has been reset! Let's start over!"
    restart_hint: str = "You can type '/restart' anytime to start fresh!"
    apology: str = (
        "I'm sorry, I'm having trouble processing your request. "
        "Please try again later."
    )
    standard_disclaimer: str = (
        "**DISCLAIMER:** U.S. Tax Assistant provides general tax information and "
        "guidance only. The information provided is not legal or tax advice, and "
        "should not be relied upon as such. Tax laws are complex and subject to "
        "change. While we strive for accuracy, this bot may not account for your "
        "specific circumstances, recent tax law changes, or uncommon tax "
        "situations. Always verify information with the official IRS resources or "
        "consult with a qualified tax professional before making financial "
        "decisions or tax filings."
    )
    short_disclaimer: str = (
        "\n\n---\n*Note: This is not professional tax advice. "
        "Please verify all information provided.*"
    )


class WebConfig(BaseModel):
    """HTTP endpoint configuration."""

    host: str = "0.0.0.0"
    port: int = 3978


class TaxAssistConfig(BaseModel):
    """Root configuration for the tax assistant."""

    models: ModelsConfig = Field(default_factory=ModelsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    bot: BotConfig = Field(default_factory=BotConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Rendered with {date} on every turn.
    system_prompt: str = (
        "Today's date is {date}.\n\n"
        "You are U.S. Tax Assistant. Your mission is to assist users with their "
        "tax-related questions using expert guidance on U.S. federal and state tax "
        "information. You'll handle different tax-related tasks and user queries "
        "as follows:\n\n"
        "- Explain specific tax regulations and their application.\n"
        "- Assist in selecting the correct tax forms.\n"
        "- Provide advice on deductions, credits, and filing status.\n"
        "- Answer common tax questions.\n"
        "- Direct users to additional resources for complex issues.\n"
        "- Serve individual taxpayers, small business owners, and tax professionals.\n"
        "- Offer a quick reference to tax codes and regulations.\n\n"
        "You have been provided with the entire U.S. Tax Code (Title 26, Internal "
        "Revenue Code) to use with your retrieval tool. Clarify misunderstandings "
        "by referencing it and offering examples. For intricate issues, suggest "
        "seeking professional advice.\n\n"
        "If you cannot find information in Title 26, or if the user mentions "
        "material outside the U.S. Tax Code, search the internet. Start with "
        "primary sources such as the IRS website. Refer to reputable secondary "
        "sources and avoid blogs and forums. If the internet is not available to "
        "you, tell the user that you cannot find the information in the U.S. Tax "
        "Code.\n"
        "IMPORTANT: Always cite where you found information if you used the "
        "retrieval tool or the internet. Users cannot upload documents; do not "
        "mention uploaded files."
    )


# === Config Loading ===


def load_config(config_path: Path | None = None) -> TaxAssistConfig:
    """Load configuration from YAML file.

    Falls back to defaults if the config file doesn't exist.
    """
    if config_path is None:
        config_path = get_taxassist_home() / "config.yaml"

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return TaxAssistConfig(**raw)
    return TaxAssistConfig()


def save_default_config(config_path: Path | None = None) -> Path:
    """Save the default configuration to a YAML file.

    Creates parent directories if needed. Returns the path.
    """
    if config_path is None:
        config_path = get_taxassist_home() / "config.yaml"

    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = TaxAssistConfig().model_dump()

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    return config_path
