from pydantic import AnyUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal
from .durations import parse_duration, DurationError

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    LOG_JSON: bool = True
    LOG_LEVEL: str = "info"
    PROBE_PORT: int = 8070
    RECEIVER_PORT: int = 8080
    MAX_EVENT_SIZE: int = 65536
    # Durations are seconds; Go-style strings ("5m", "1m30s") are accepted
    LIVENESS_STALE_DURATION: float = 300.0
    DEFAULT_TIMEOUT_DURATION: float = 120.0
    MAX_TIMEOUT_DURATION: float = 1800.0
    PROJECT_ID: str = ""
    # Backend adapter selection: "memory" or a real backend
    BROKER_ADAPTER: Literal["memory", "http"] = "memory"
    BUS_ADAPTER: Literal["memory", "redis"] = "memory"
    STORAGE_ADAPTER: Literal["memory", "http"] = "memory"
    ORCHESTRATION_ADAPTER: Literal["memory", "http"] = "memory"
    BROKER_CELL_INGRESS_BASE_URL: AnyUrl | None = None
    REDIS_URL: AnyUrl | None = None
    TOPIC_STREAM_PREFIX: str = "probehelper:topics"
    STORAGE_BASE_URL: str = "https://storage.googleapis.com"
    STORAGE_OBJECT_NAME: str = "cloudstoragesource-probe"
    ACCESS_TOKEN: str | None = None
    K8S_API_URL: str = "https://kubernetes.default.svc"
    K8S_NAMESPACE: str = "default"
    K8S_TOKEN_PATH: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    APISERVER_POD_NAME: str = "apiserversource-probe"

    @field_validator(
        "LIVENESS_STALE_DURATION",
        "DEFAULT_TIMEOUT_DURATION",
        "MAX_TIMEOUT_DURATION",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value):
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
            try:
                return parse_duration(value)
            except DurationError as e:
                raise ValueError(str(e)) from e
        return value

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
