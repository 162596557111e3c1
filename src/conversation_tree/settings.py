"""
Configuration settings for the conversation tree toolkit.

Uses pydantic-settings so every field can be overridden through an environment
variable prefixed with 'CONVERSATION_TREE_' (e.g. 'CONVERSATION_TREE_TOKEN_BUDGET=4000')
or through a '.env' file in the working directory. List fields such as
'llm_models' are read as JSON ('["gpt-4o-mini", "gpt-4o"]').
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConversationTreeSettings(BaseSettings):
    """Runtime configuration shared by the controller, the assembler and the LLM gateway."""

    model_config = SettingsConfigDict(env_prefix="CONVERSATION_TREE_", env_file=".env", extra="ignore")

    # Context assembly
    token_budget: int = Field(default=8000, gt=0)
    attachment_token_estimate: int = Field(default=100, ge=0)

    # Active-path controller
    flag_write_retries: int = Field(default=1, ge=0)

    # Long-term memory: number of memories passed to the model per reply
    memory_search_limit: int = Field(default=3, ge=0)

    # Persistence
    database_url: str = "sqlite+aiosqlite:///conversation_tree.db"

    # Completion gateway: models are tried in order, falling back on failure
    llm_models: list[str] = Field(default_factory=lambda: ["gpt-4o-mini"])
    llm_base_url: str | None = None
    llm_api_key: str | None = None
    llm_temperature: float = 0.7

    default_title: str = "New Chat"
    log_level: str = "INFO"


settings = ConversationTreeSettings()
