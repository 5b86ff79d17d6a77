import json
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AnyUrl, BaseModel, BeforeValidator, Field, HttpUrl, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class BrokerService(BaseModel):
    """One provider entry served by the static broker."""

    address: str
    model: str
    endpoint: str


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "0g-proxy"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/v1"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    SENTRY_DSN: HttpUrl | None = None
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Empty token disables bearer auth (trusted network / local dev)
    AUTH_TOKEN: str = ""
    RATE_LIMIT_PER_MINUTE: int = 600

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    # Provider resolution
    PROVIDER_ADDRESS_PREFIX: str = "0x"
    PROVIDER_CACHE_MODE: Literal["keyed", "single"] = "keyed"
    PROVIDER_CACHE_SIZE: int = Field(default=64, ge=1)
    PROVIDER_CACHE_TTL_SECONDS: float = Field(default=600.0, gt=0)

    # Streaming
    SYNTHESIS_GRANULARITY: Literal["word", "message"] = "word"
    UPSTREAM_STREAM_REQUESTS: bool = True
    UPSTREAM_TIMEOUT_SECONDS: Optional[float] = None
    STREAM_TIMEOUT_SECONDS: Optional[float] = None

    # Static broker
    BROKER_SERVICES: List[BrokerService] = []
    BROKER_AUTH_HEADERS: Dict[str, str] = {}

    @field_validator("BROKER_SERVICES", mode="before")
    @classmethod
    def _services_from_json(cls, v: Any) -> Any:
        if isinstance(v, str):
            return json.loads(v)
        return v

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]


settings = Settings()  # type: ignore
