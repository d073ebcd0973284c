from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
NonNegativeFloat = Annotated[float, Field(ge=0.0)]

ValidationMode = Literal["lenient", "strict"]


class ApifyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    token_env: str = "APIFY_TOKEN"
    dataset_clean: bool = True
    dataset_limit: PositiveInt | None = None

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None
    model: str = "gpt-4o-mini"
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_output_tokens: PositiveInt = 1200
    timeout_seconds: float = Field(60.0, gt=0.0)

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("model")
    @classmethod
    def _model_must_be_set(cls, v: str) -> str:
        name = (v or "").strip()
        if not name:
            raise ValueError("must be a non-empty model name")
        return name

    @field_validator("base_url")
    @classmethod
    def _blank_base_url_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        url = v.strip()
        return url or None


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_retries: NonNegativeInt = 3
    retry_base_delay_seconds: NonNegativeFloat = 2.0
    retry_max_delay_seconds: NonNegativeFloat = 60.0
    validation_mode: ValidationMode = "lenient"

    @model_validator(mode="after")
    def _max_delay_covers_base(self) -> "ExtractionConfig":
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self


class BatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    size: PositiveInt = 3
    delay_seconds: NonNegativeFloat = 2.0
    deadline_seconds: float | None = Field(None, gt=0.0)


class DedupeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    skip_exact: bool = True
    skip_similar: bool = False
    similarity_window_days: PositiveInt = 30
    max_workers: PositiveInt = 8


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str = "data/listings.sqlite"

    @field_validator("path")
    @classmethod
    def _path_must_be_set(cls, v: str) -> str:
        p = (v or "").strip()
        if not p:
            raise ValueError("must be a non-empty path")
        return p


class ListingDefaultsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    default_city: str = "Hà Nội"
    default_group_name: str = "Unknown Group"


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    apify: ApifyConfig = Field(default_factory=ApifyConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    dedupe: DedupeConfig = Field(default_factory=DedupeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    listing: ListingDefaultsConfig = Field(default_factory=ListingDefaultsConfig)
