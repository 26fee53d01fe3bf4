"""Settings via pydantic-settings with COLLOQUY_ env prefix.

Settings carries everything the orchestration core needs at runtime;
ModelConfig is the per-model slice handed to the transport and adapter.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

WireProtocol = Literal["openai", "anthropic"]


class ModelConfig(BaseModel):
    """Declared capabilities and endpoint of the active model."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    protocol: WireProtocol = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model_id: str
    context_window: int = Field(32768, gt=0)
    supports_tools: bool = True
    max_tool_call_rounds: int = Field(40, ge=1)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COLLOQUY_", env_file=".env")

    log_level: str = "info"

    # Model
    protocol: WireProtocol = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    max_tokens: int = 4096
    context_window: int = 32768
    supports_tools: bool = True
    max_tool_call_rounds: int = 40  # Max tool rounds per turn
    system_prompt: str = ""

    # Session / compaction
    compaction_threshold: float = 0.8
    compaction_keep_recent: int = 4
    near_limit_threshold: float = 0.8
    full_threshold: float = 0.95
    summary_model: str = ""  # empty -> same model

    # Transport
    api_timeout_connect: float = 10.0  # seconds
    api_timeout_read: float = 120.0  # seconds
    transport_max_retries: int = 2
    retry_backoff: float = 1.0  # seconds, doubled per attempt

    # Turn concurrency
    busy_policy: Literal["reject", "queue"] = "reject"
    strict_contracts: bool = False  # raise instead of rejecting on contract errors

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        for name in ("compaction_threshold", "near_limit_threshold", "full_threshold"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {value}")
        if self.near_limit_threshold > self.full_threshold:
            raise ValueError(
                f"near_limit_threshold ({self.near_limit_threshold}) must be <= "
                f"full_threshold ({self.full_threshold})"
            )
        if self.compaction_keep_recent < 0:
            raise ValueError("compaction_keep_recent must be >= 0")
        return self

    def to_model_config(self) -> ModelConfig:
        return ModelConfig(
            protocol=self.protocol,
            base_url=self.base_url,
            api_key=self.api_key,
            model_id=self.model,
            context_window=self.context_window,
            supports_tools=self.supports_tools,
            max_tool_call_rounds=self.max_tool_call_rounds,
        )
