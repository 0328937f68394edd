from dataclasses import dataclass


@dataclass(frozen=True)
class CacheErrorCode:
    code: str
    message: str


CACHE_001_CLIENT_MISSING = CacheErrorCode(
    "CACHE_001_CLIENT_MISSING",
    "A destination client with an id is required.",
)
CACHE_002_RULE_INVALID = CacheErrorCode(
    "CACHE_002_RULE_INVALID",
    "Rule structure is invalid.",
)
CACHE_003_STORE_UNAVAILABLE = CacheErrorCode(
    "CACHE_003_STORE_UNAVAILABLE",
    "Cache store query failed.",
)
CACHE_004_SCHEMA_NOT_READY = CacheErrorCode(
    "CACHE_004_SCHEMA_NOT_READY",
    "Cache store schema is not ready.",
)
CACHE_005_FILTER_INVALID = CacheErrorCode(
    "CACHE_005_FILTER_INVALID",
    "Filter group cannot be composed.",
)


class CacheEngineError(RuntimeError):
    def __init__(self, err: CacheErrorCode, detail: str = "") -> None:
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{err.code}: {err.message}{suffix}")
        self.err = err
        self.detail = detail


class ConfigurationError(CacheEngineError):
    """Caller bug: missing client, malformed rule, uncomposable filter."""


class StoreError(CacheEngineError):
    """The store could not answer. Never equivalent to "no match"."""


class PhoneNormalizationError(ValueError):
    pass
