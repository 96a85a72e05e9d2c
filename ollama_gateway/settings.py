from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ollama_endpoints: str = ""
    backend_timeout_seconds: float | None = None
    backend_connect_timeout_seconds: float | None = None
    null_bearer_compat: bool = False
    relay_reassemble_partial_lines: bool = False
    basic_auth_required: bool = False
    basic_auth_hashes: str = ""
    basic_auth_realm: str = "Area Riservata"
    cors_allow_origins: str = "*"
    public_dir: str = "public"
    host: str = "0.0.0.0"
    port: int = 20006

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def basic_auth_users(self) -> dict[str, str]:
        users: dict[str, str] = {}
        for pair in _split_csv(self.basic_auth_hashes):
            username, sep, password_hash = pair.partition(":")
            if not sep or not username.strip():
                continue
            users[username.strip()] = password_hash.strip()
        return users

    @property
    def basic_auth_enabled(self) -> bool:
        return self.basic_auth_required or bool(self.basic_auth_users)

    @property
    def cors_allow_origins_list(self) -> list[str]:
        return _split_csv(self.cors_allow_origins) or ["*"]


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
