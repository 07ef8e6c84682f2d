from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel

from schemas.entities import ActionChip, MaskResult, PIICategory, ScanResult


class CamelModel(BaseModel):
    """Accepts both snake_case and camelCase, serialises camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Provider Schemas ---

class ProviderKind(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"


# Names the desktop client used before providers were generalised.
_PROVIDER_ALIASES = {"ollama": "local", "openai": "cloud"}


class ProviderConfig(CamelModel):
    """Immutable per-request provider settings, supplied by the caller."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderKind = ProviderKind.LOCAL
    base_url: str = Field(..., min_length=1, max_length=2048)
    model: str = Field(..., min_length=1, max_length=200)
    api_key: SecretStr | None = None
    max_tokens: int = Field(2048, gt=0, le=1_000_000)
    temperature: float = Field(0.7, ge=0.0, le=2.0)

    @field_validator("provider", mode="before")
    @classmethod
    def normalize_provider(cls, v: object) -> object:
        if isinstance(v, str):
            return _PROVIDER_ALIASES.get(v.lower(), v.lower())
        return v

    def credential(self) -> str | None:
        if self.api_key is None:
            return None
        return self.api_key.get_secret_value() or None


class ModelInfo(CamelModel):
    id: str
    name: str
    provider: ProviderKind


# --- Privacy Schemas ---

class TextRequest(CamelModel):
    text: str = Field(..., max_length=1_000_000)


class RestoreRequest(CamelModel):
    text: str = Field(..., max_length=1_000_000)
    mapping: dict[str, str] = Field(default_factory=dict)


class PIIMatchResponse(CamelModel):
    category: PIICategory
    value: str
    start: int
    end: int


class ScanResponse(CamelModel):
    has_pii: bool
    matches: list[PIIMatchResponse]

    @classmethod
    def from_result(cls, result: ScanResult) -> ScanResponse:
        return cls(
            has_pii=result.has_pii,
            matches=[
                PIIMatchResponse(
                    category=m.category, value=m.value, start=m.start, end=m.end
                )
                for m in result.matches
            ],
        )


class MaskResponse(CamelModel):
    masked: str
    mapping: dict[str, str]
    scan_result: ScanResponse

    @classmethod
    def from_result(cls, result: MaskResult) -> MaskResponse:
        return cls(
            masked=result.masked,
            mapping=dict(result.mapping),
            scan_result=ScanResponse.from_result(result.scan_result),
        )


class RestoreResponse(CamelModel):
    text: str


# --- AI Request Schemas ---

class AIRequest(CamelModel):
    prompt: str = Field(..., min_length=1, max_length=100_000)
    config: ProviderConfig | None = None
    request_id: str = Field(..., min_length=1, max_length=128)
    use_privacy_shield: bool = False
    timeout_seconds: float | None = Field(None, gt=0, le=3600)


class AIChunkPayload(CamelModel):
    content: str
    done: bool
    request_id: str


class AIErrorPayload(CamelModel):
    code: str
    message: str
    request_id: str


# --- Intent Schemas ---

class ActionChipResponse(CamelModel):
    id: str
    label: str
    action_type: str
    payload: str
    shortcut: str | None = None

    @classmethod
    def from_chip(cls, chip: ActionChip) -> ActionChipResponse:
        return cls(
            id=chip.id,
            label=chip.label,
            action_type=chip.action_type.value,
            payload=chip.payload,
            shortcut=chip.shortcut,
        )
