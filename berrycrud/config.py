"""Runtime settings.

Every value can be overridden from the environment (or a ``.env`` file) with the
``BERRYCRUD_`` prefix; nested groups use ``__``, e.g.
``BERRYCRUD_CACHE__ENABLED=1`` or ``BERRYCRUD_QUEUE__BROKER_URL=redis://...``.
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseModel):
    enabled: bool = False
    # Default TTL in seconds for cached payloads
    ttl: int = 3600
    # Redis URL; empty means an in-process cache
    url: str = ''
    # Disable caching when the backend cannot invalidate by tag
    validate_tagging: bool = True
    auto_disable_on_error: bool = True


class QueueSettings(BaseModel):
    enabled: bool = False
    broker_url: str = ''
    task_name: str = 'berrycrud.run_operation'
    validate_before_dispatch: bool = True
    # Run the operation synchronously when the queue is unusable
    auto_disable_on_error: bool = True


class CrudSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix='BERRYCRUD_',
        env_nested_delimiter='__',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
    )

    primary_key: str = 'id'
    default_limit: int = Field(default=10, ge=1)
    # Column-type maps change only with migrations
    column_types_ttl: int = 86400
    cache: CacheSettings = Field(default_factory=CacheSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)


@lru_cache(maxsize=1)
def get_settings() -> CrudSettings:
    return CrudSettings()


__all__ = ['CacheSettings', 'QueueSettings', 'CrudSettings', 'get_settings']
