import os
from typing import Dict, Optional, Protocol

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on Python < 3.11
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .types import ModelRecord, ProviderRecord

CATALOG_FILENAMES: tuple[str, ...] = ("catalog.toml", "catalog.yaml", "catalog.yml")


class ModelCatalog(Protocol):
    def get_model(self, model_id: str) -> Optional[ModelRecord]: ...

    def get_provider(self, provider_id: str) -> Optional[ProviderRecord]: ...


class StaticCatalog:
    """Read-only in-memory catalog of providers and models."""

    def __init__(
        self,
        providers: Dict[str, ProviderRecord],
        models: Dict[str, ModelRecord],
        *,
        path: str | None = None,
    ) -> None:
        self.providers = dict(providers)
        self.models = dict(models)
        self.path = path

    def get_model(self, model_id: str) -> Optional[ModelRecord]:
        return self.models.get(model_id)

    def get_provider(self, provider_id: str) -> Optional[ProviderRecord]:
        return self.providers.get(provider_id)


class _ProviderModel(BaseModel):
    type: str
    user_id: str
    base_url: str | None = None
    api_key: str = Field(min_length=1)
    enabled: bool = True

    model_config = ConfigDict(extra="forbid")


class _ModelModel(BaseModel):
    provider: str
    model_id: str = Field(min_length=1)
    name: str | None = None

    model_config = ConfigDict(extra="forbid")


class _CatalogModel(BaseModel):
    providers: Dict[str, _ProviderModel] = Field(default_factory=dict)
    models: Dict[str, _ModelModel] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_references(self) -> "_CatalogModel":
        for model_key, model in self.models.items():
            if model.provider not in self.providers:
                raise ValueError(
                    f"model '{model_key}' references unknown provider '{model.provider}'"
                )
        return self


def _read_raw(path: str) -> object:
    if path.endswith(".toml"):
        with open(path, "rb") as f:
            return tomllib.load(f)
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def find_catalog(config_dir: str) -> str:
    for filename in CATALOG_FILENAMES:
        candidate = os.path.join(config_dir, filename)
        if os.path.exists(candidate):
            return candidate
    raise FileNotFoundError(
        f"no catalog file ({', '.join(CATALOG_FILENAMES)}) found in {config_dir}"
    )


def load_catalog(path: str) -> StaticCatalog:
    raw = _read_raw(path)
    try:
        parsed = _CatalogModel.model_validate(raw)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ValueError("; ".join(problems)) from exc
    providers = {
        name: ProviderRecord(
            id=name,
            user_id=entry.user_id,
            type=entry.type,
            base_url=entry.base_url or None,
            api_key_encrypted=entry.api_key,
            enabled=entry.enabled,
        )
        for name, entry in parsed.providers.items()
    }
    models = {
        key: ModelRecord(
            id=key,
            provider_id=entry.provider,
            model_id=entry.model_id,
            name=entry.name or entry.model_id,
        )
        for key, entry in parsed.models.items()
    }
    return StaticCatalog(providers, models, path=path)
