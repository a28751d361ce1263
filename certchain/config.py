"""
CertChain — Configuration System

All configuration is Pydantic-validated and loaded from:
1. config/default.yaml (defaults)
2. Environment variables (overrides, CERTCHAIN_ prefix, ``__`` nesting)

Every store backend defaults to ``memory`` so the service boots without
external infrastructure.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, EnvSettingsSource, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    # Header carrying the acting principal (issuer wallet address).
    principal_header: str = "X-Wallet-Address"
    max_upload_bytes: int = 10 * 1024 * 1024


class LedgerConfig(BaseModel):
    backend: Literal["memory", "web3"] = "memory"
    rpc_url: str = "http://127.0.0.1:8545"
    contract_address: str = ""
    private_key: str = ""
    chain_id: int | None = None          # None: ask the node
    confirmation_timeout_s: float = 120.0
    poll_latency_s: float = 1.0

    @model_validator(mode="after")
    def _strip_private_key(self) -> LedgerConfig:
        # Secret managers can inject trailing \r\n into env vars
        if self.private_key:
            object.__setattr__(self, "private_key", self.private_key.strip())
        return self


class ContentStoreConfig(BaseModel):
    backend: Literal["memory", "pinata"] = "memory"
    api_url: str = "https://api.pinata.cloud"
    gateway_url: str = "https://gateway.pinata.cloud/ipfs"
    api_key: str = ""
    api_secret: str = ""
    timeout_s: float = 30.0
    upload_filename: str = "certificate.json"


class IndexConfig(BaseModel):
    backend: Literal["memory", "postgres"] = "memory"
    host: str = "localhost"
    port: int = 5432
    database: str = "certchain"
    username: str = "certchain"
    password: str = "certchain_dev"
    pool_size: int = 10
    ssl: bool = False
    command_timeout_s: float = 10.0

    @property
    def dsn(self) -> str:
        return (
            f"postgresql://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class IssuanceConfig(BaseModel):
    upload_concurrency: int = Field(default=4, ge=1, le=64)
    max_batch_size: int = Field(default=200, ge=1)


class ResolutionConfig(BaseModel):
    # Auxiliary reads are abandoned (and flagged unavailable) past these.
    payload_timeout_s: float = 10.0
    index_timeout_s: float = 5.0


class LegacyConfig(BaseModel):
    recognizer: Literal["tesseract", "text"] = "tesseract"
    identifier_pattern: str = r"\bRoll\s*No\.?[:\s]+([\w-]+)"
    name_pattern: str = r"\bName[^\S\r\n]*[:\s][^\S\r\n]*([A-Za-z][A-Za-z ]*)"
    # When True, two distinct labelled identifiers (or names) in one
    # document classify as Error instead of taking the first match.
    reject_conflicting_fields: bool = False
    tesseract_config: str = "--oem 3 --psm 6"
    pdf_render_zoom: float = 2.0
    pdf_text_min_chars: int = 50   # below this a PDF page is OCR'd as an image


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class CertChainConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="CERTCHAIN_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "certchain-default"

    server: ServerConfig = Field(default_factory=ServerConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    content_store: ContentStoreConfig = Field(default_factory=ContentStoreConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    issuance: IssuanceConfig = Field(default_factory=IssuanceConfig)
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    legacy: LegacyConfig = Field(default_factory=LegacyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Secrets are never written to YAML; they arrive through these variables.
_SECRET_ENV: dict[str, tuple[str, str]] = {
    "CERTCHAIN_LEDGER_PRIVATE_KEY": ("ledger", "private_key"),
    "CERTCHAIN_PINATA_API_KEY": ("content_store", "api_key"),
    "CERTCHAIN_PINATA_API_SECRET": ("content_store", "api_secret"),
    "CERTCHAIN_INDEX_PASSWORD": ("index", "password"),
}


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> CertChainConfig:
    """
    Load configuration from YAML file, then apply environment variable
    overrides (``CERTCHAIN_<SECTION>__<KEY>`` and the secret variables) and
    finally explicit ``overrides`` (used by tests).
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Init kwargs outrank the environment in BaseSettings, so nested env
    # values are folded in here to sit above the YAML.
    raw = _deep_merge(raw, EnvSettingsSource(CertChainConfig)())

    for env_name, (section, key) in _SECRET_ENV.items():
        if value := os.environ.get(env_name):
            raw.setdefault(section, {})[key] = value

    if overrides:
        raw = _deep_merge(raw, overrides)

    return CertChainConfig(**raw)
