from __future__ import annotations

import base64
import logging
import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo

import httpx
from fastapi import FastAPI
from pydantic import ValidationError

from ...domain.models import RawAsset, ServerVersion
from ...settings import ImmichRemoteConfig
from .api_levels import API_BASE_PATH, NEWEST_API_LEVEL, ApiLevel, fallback_chain, select_api_level
from .base import (
    FetchResult,
    ImmichRequestError,
    NegotiationError,
    UnsupportedOperationError,
)
from .proxy import ProxyTarget, install_media_proxy

LOGGER = logging.getLogger(__name__)

MEMORY_TYPE_ON_THIS_DAY = "on_this_day"


def _is_accepted_status(status_code: int) -> bool:
    # 4xx bodies are inspected by the caller, 499 and above are failures.
    return 200 <= status_code < 499


def _to_iso_instant(value: datetime) -> str:
    utc_value = value.astimezone(timezone.utc)
    return utc_value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_value.microsecond // 1000:03d}Z"


def project_onto_year(value: date, year: int) -> date:
    try:
        return value.replace(year=year)
    except ValueError:
        # 29 February in a non-leap year rolls over like a calendar overflow.
        return date(year, 3, 1)


def anniversary_window(
    today: date,
    year: int,
    *,
    days_back: int,
    days_forward: int,
) -> tuple[date, date]:
    start = today - timedelta(days=days_back)
    end = today + timedelta(days=days_forward)
    end_year = year
    if (start.month, start.day) > (end.month, end.day):
        end_year = year + 1
    return project_onto_year(start, year), project_onto_year(end, end_year)


def _parse_assets(items: Any, *, operation: str) -> list[RawAsset]:
    if not isinstance(items, list):
        raise ImmichRequestError(f"Unexpected {operation} response shape")

    assets: list[RawAsset] = []
    for item in items:
        if not isinstance(item, dict):
            LOGGER.warning("Skipping non-object asset in %s response", operation)
            continue
        try:
            assets.append(RawAsset.model_validate(item))
        except ValidationError as exc:
            LOGGER.warning("Skipping invalid asset in %s response: %s", operation, exc.errors()[0]["msg"])
    return assets


def _search_items(payload: Any) -> Any:
    if isinstance(payload, dict):
        nested = payload.get("assets")
        if isinstance(nested, dict) and isinstance(nested.get("items"), list):
            return nested["items"]
        if isinstance(payload.get("items"), list):
            return payload["items"]
    return payload


class ImmichSession:
    """Connection to one Immich server.

    Holds the HTTP client and the negotiated API level. ``negotiate`` runs once
    unless forced; every fetch method returns a ``FetchResult`` and logs its
    failures instead of raising.
    """

    def __init__(
        self,
        config: ImmichRemoteConfig,
        *,
        debug: bool = False,
        timezone_value: ZoneInfo | None = None,
        transport: httpx.BaseTransport | None = None,
        proxy_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._debug = debug
        self._timezone = timezone_value
        self._transport = transport
        self._proxy_transport = proxy_transport
        self._client: httpx.Client | None = None
        self._level: ApiLevel = NEWEST_API_LEVEL
        self._server_version: ServerVersion | None = None
        self._proxy_configured = False
        self._lock = threading.Lock()

    @property
    def config(self) -> ImmichRemoteConfig:
        return self._config

    @property
    def debug(self) -> bool:
        return self._debug

    @debug.setter
    def debug(self, value: bool) -> None:
        self._debug = value

    @property
    def api_level(self) -> ApiLevel:
        return self._level

    @property
    def server_version(self) -> ServerVersion | None:
        return self._server_version

    @property
    def is_negotiated(self) -> bool:
        return self._client is not None

    @property
    def proxy_configured(self) -> bool:
        return self._proxy_configured

    def _log(self, message: str, *args: Any) -> None:
        if self._debug:
            LOGGER.info("[debug] " + message, *args)
        else:
            LOGGER.debug(message, *args)

    def update_config(self, config: ImmichRemoteConfig) -> None:
        """Swap in a new configuration; the next ``negotiate`` rebuilds the client."""
        with self._lock:
            self._config = config
            if self._client is not None:
                self._client.close()
                self._client = None

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    def _build_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._config.url + API_BASE_PATH,
            timeout=self._config.timeout_seconds,
            headers={"x-api-key": self._config.api_key, "Accept": "application/json"},
            transport=self._transport,
        )

    def negotiate(self, application: FastAPI | None = None, *, force: bool = False) -> ApiLevel:
        with self._lock:
            if self._client is not None and not force:
                return self._level

            if self._client is not None:
                self._client.close()
                self._client = None
            client = self._build_client()
            try:
                version = self._probe_server_version(client)
            except NegotiationError:
                client.close()
                raise

            self._client = client
            self._server_version = version
            self._level = select_api_level(version)

            if application is not None:
                proxy = install_media_proxy(application, transport=self._proxy_transport)
                proxy.bind(self.proxy_target(), transport=self._proxy_transport)
                self._proxy_configured = True

            self._log(
                "Server version %s.%s.%s -> API level %s",
                version.major,
                version.minor,
                version.patch,
                self._level.name.value,
            )
            return self._level

    def _probe_server_version(self, client: httpx.Client) -> ServerVersion:
        last_status: int | None = None
        for level in fallback_chain(NEWEST_API_LEVEL):
            self._log("Fetching server version (%s)", level.name.value)
            try:
                response = client.get(level.server_version)
            except httpx.HTTPError as exc:
                raise NegotiationError(f"Failed to reach Immich at {self._config.url}: {exc}") from exc

            if not _is_accepted_status(response.status_code):
                raise NegotiationError(
                    f"Immich server version request failed with status {response.status_code}"
                )
            if response.status_code != 200:
                last_status = response.status_code
                continue

            try:
                return ServerVersion.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                raise NegotiationError("Immich server version response was not parsable") from exc

        raise NegotiationError(
            f"Failed to get Immich version at any API level (last status {last_status}). Cannot proceed."
        )

    def proxy_target(self) -> ProxyTarget:
        return ProxyTarget(
            base_url=self._config.url,
            api_key=self._config.api_key,
            timeout_seconds=self._config.timeout_seconds,
            level=self._level,
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _require_client(self) -> httpx.Client:
        if self._client is None:
            raise ImmichRequestError("Immich session has not been negotiated")
        return self._client

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        client = self._require_client()
        try:
            response = client.request(method, path, params=params, json=body)
        except httpx.HTTPError as exc:
            raise ImmichRequestError(f"{operation} request failed: {exc}") from exc

        if response.status_code != 200:
            raise ImmichRequestError(
                f"unexpected response ({operation}): {response.status_code} {response.reason_phrase}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ImmichRequestError(f"{operation} response was not valid JSON") from exc

    def _failure(self, operation: str, exc: Exception, **context: Any) -> FetchResult:
        details = ", ".join(f"{key}={value}" for key, value in context.items())
        reason = f"{operation}: {exc}" if not details else f"{operation} ({details}): {exc}"
        LOGGER.error("Immich %s", reason)
        return FetchResult.failure(reason)

    def _today(self) -> date:
        return datetime.now(self._timezone).date()

    # ------------------------------------------------------------------
    # Albums
    # ------------------------------------------------------------------

    def album_name_to_id_map(self) -> dict[str, str]:
        try:
            payload = self._request_json("GET", self._level.path("albums"), operation="albums")
        except (ImmichRequestError, UnsupportedOperationError) as exc:
            LOGGER.error("Immich albums: %s", exc)
            return {}
        if not isinstance(payload, list):
            LOGGER.error("Immich albums: unexpected response shape")
            return {}

        self._log("Albums received: %s", len(payload))
        album_map: dict[str, str] = {}
        for album in payload:
            if not isinstance(album, dict):
                continue
            name = album.get("albumName")
            album_id = album.get("id")
            if isinstance(name, str) and album_id is not None:
                album_map[name] = str(album_id)
        return album_map

    def find_album_ids(self, album_names: Iterable[str]) -> list[str]:
        album_map = self.album_name_to_id_map()
        album_ids: list[str] = []
        for name in album_names:
            if name in album_map:
                album_ids.append(album_map[name])
            else:
                LOGGER.error('No Immich album named "%s" (case sensitive)', name)
        return album_ids

    def _album_assets(self, album_id: str) -> FetchResult:
        try:
            payload = self._request_json(
                "GET",
                self._level.path("album_info", album_id),
                operation="albumInfo",
            )
            if not isinstance(payload, dict):
                raise ImmichRequestError("Unexpected albumInfo response shape")
            assets = _parse_assets(payload.get("assets", []), operation="albumInfo")
        except ImmichRequestError as exc:
            return self._failure("albumInfo", exc, album_id=album_id)

        album_name = payload.get("albumName")
        if isinstance(album_name, str) and album_name:
            assets = [asset.model_copy(update={"album_name": album_name}) for asset in assets]
        self._log("Album %s assets: %s", album_id, len(assets))
        return FetchResult(assets=assets)

    def album_assets(self, album_ids: Iterable[str]) -> FetchResult:
        result = FetchResult()
        for album_id in album_ids:
            result = result.merge(self._album_assets(album_id))
        return result

    # ------------------------------------------------------------------
    # Memory lane
    # ------------------------------------------------------------------

    def _memory_lane_params(self, day: date) -> dict[str, Any]:
        if self._level.memories_by_instant:
            midnight = datetime.combine(day, time.min, tzinfo=self._timezone)
            if self._timezone is None:
                midnight = midnight.astimezone()
            return {"for": _to_iso_instant(midnight), "type": MEMORY_TYPE_ON_THIS_DAY}
        return {"day": day.day, "month": day.month}

    def memory_lane_assets(self, num_days: int, *, today: date | None = None) -> FetchResult:
        day = today or self._today()
        result = FetchResult()
        for _ in range(num_days):
            params = self._memory_lane_params(day)
            try:
                payload = self._request_json(
                    "GET",
                    self._level.path("memory_lane"),
                    operation="memoryLane",
                    params=params,
                )
                if not isinstance(payload, list):
                    raise ImmichRequestError("Unexpected memoryLane response shape")
                day_assets: list[RawAsset] = []
                for memory in payload:
                    if isinstance(memory, dict):
                        day_assets.extend(_parse_assets(memory.get("assets", []), operation="memoryLane"))
                result = result.merge(FetchResult(assets=day_assets))
                self._log("Memory lane %s: %s memories", day.isoformat(), len(payload))
            except ImmichRequestError as exc:
                result = result.merge(self._failure("memoryLane", exc, day=day.isoformat()))
            day -= timedelta(days=1)
        return result

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_assets(self, query: dict[str, Any] | None, size: int) -> FetchResult:
        body = {**(query or {}), "size": size}
        self._log("Search body %s", body)
        try:
            payload = self._request_json("POST", self._level.path("search"), operation="search", body=body)
            assets = _parse_assets(_search_items(payload), operation="search")
        except (ImmichRequestError, UnsupportedOperationError) as exc:
            return self._failure("search", exc)
        return FetchResult(assets=assets)

    def random_assets(self, size: int, query: dict[str, Any] | None) -> FetchResult:
        body = {"size": size, **(query or {})}
        self._log("Random body %s", body)
        try:
            payload = self._request_json(
                "POST",
                self._level.path("random_search"),
                operation="random",
                body=body,
            )
            assets = _parse_assets(payload, operation="random")
        except (ImmichRequestError, UnsupportedOperationError) as exc:
            return self._failure("random", exc)
        return FetchResult(assets=assets)

    def anniversary_assets(
        self,
        days_back: int,
        days_forward: int,
        start_year: int,
        end_year: int,
        size: int,
        query: dict[str, Any] | None,
        *,
        today: date | None = None,
    ) -> FetchResult:
        reference = today or self._today()
        try:
            path = self._level.path("random_search")
        except UnsupportedOperationError as exc:
            return self._failure("anniversary", exc)

        result = FetchResult()
        for year in range(start_year, end_year + 1):
            window_start, window_end = anniversary_window(
                reference,
                year,
                days_back=days_back,
                days_forward=days_forward,
            )
            body = {
                **(query or {}),
                "size": size,
                "takenAfter": f"{window_start.isoformat()}T00:00:00.000Z",
                "takenBefore": f"{window_end.isoformat()}T23:59:59.999Z",
            }
            try:
                payload = self._request_json("POST", path, operation="anniversary", body=body)
                result = result.merge(FetchResult(assets=_parse_assets(payload, operation="anniversary")))
            except ImmichRequestError as exc:
                LOGGER.warning("Immich anniversary year %s failed: %s", year, exc)
                result = result.merge(FetchResult.failure(f"anniversary ({year}): {exc}"))
        return result

    # ------------------------------------------------------------------
    # Single assets
    # ------------------------------------------------------------------

    def asset_info(self, asset_id: str) -> dict[str, Any]:
        info: dict[str, Any] = {"exifInfo": {}, "people": []}
        try:
            payload = self._request_json(
                "GET",
                self._level.path("asset_info", asset_id),
                operation="assetInfo",
            )
        except ImmichRequestError as exc:
            LOGGER.error("Immich assetInfo (asset_id=%s): %s", asset_id, exc)
            return info
        if isinstance(payload, dict):
            info["exifInfo"] = payload.get("exifInfo") or {}
            info["people"] = payload.get("people") or []
        return info

    def asset_data_uri(self, asset_id: str) -> str | None:
        try:
            client = self._require_client()
            response = client.get(
                self._level.path("asset_download", asset_id),
                headers={"Accept": "application/octet-stream"},
            )
        except (ImmichRequestError, httpx.HTTPError) as exc:
            LOGGER.error("Immich asset blob (asset_id=%s): %s", asset_id, exc)
            return None
        if response.status_code != 200:
            LOGGER.error("Immich asset blob (asset_id=%s): status %s", asset_id, response.status_code)
            return None
        content_type = response.headers.get("content-type", "application/octet-stream")
        encoded = base64.b64encode(response.content).decode("ascii")
        return f"data:{content_type};base64,{encoded}"
