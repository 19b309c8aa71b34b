from __future__ import annotations

from dataclasses import dataclass, field

from ...domain.models import RawAsset


class ImmichAdapterError(RuntimeError):
    """Base class for errors raised by the Immich adapter."""


class NegotiationError(ImmichAdapterError):
    """Raised when no API level could be confirmed against the Immich server."""


class UnsupportedOperationError(ImmichAdapterError):
    """Raised when an API level has no endpoint for the requested operation."""


class ImmichRequestError(ImmichAdapterError):
    """Raised when a single Immich request fails or returns an unusable payload."""


@dataclass(frozen=True, slots=True)
class FetchResult:
    assets: list[RawAsset] = field(default_factory=list)
    errors: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    @classmethod
    def failure(cls, reason: str) -> FetchResult:
        return cls(assets=[], errors=(reason,))

    def merge(self, other: FetchResult) -> FetchResult:
        return FetchResult(assets=[*self.assets, *other.assets], errors=self.errors + other.errors)
