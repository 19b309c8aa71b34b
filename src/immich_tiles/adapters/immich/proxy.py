from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator
from urllib.parse import quote

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .api_levels import API_BASE_PATH, ApiLevel

LOGGER = logging.getLogger(__name__)

IMAGE_PROXY_PREFIX = "/immichtilesslideshow"
VIDEO_PROXY_PREFIX = "/immichtilesslideshow-video"

IMAGE_ACCEPT = "application/octet-stream"
VIDEO_ACCEPT = "video/*"

PASSTHROUGH_HEADERS = (
    "content-length",
    "content-range",
    "accept-ranges",
    "content-encoding",
    "cache-control",
    "etag",
    "last-modified",
)


def image_link(asset_id: str) -> str:
    return f"{IMAGE_PROXY_PREFIX}/{asset_id}"


def video_link(asset_id: str) -> str:
    return f"{VIDEO_PROXY_PREFIX}/{asset_id}"


@dataclass(frozen=True, slots=True)
class ProxyTarget:
    """Where proxied media requests go for one negotiated session."""

    base_url: str
    api_key: str
    timeout_seconds: float
    level: ApiLevel

    def remote_url(self, endpoint: str, asset_id: str) -> str:
        return self.base_url + API_BASE_PATH + self.level.path(endpoint, quote(asset_id, safe=""))


async def _relay(upstream: httpx.Response, client: httpx.AsyncClient) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    finally:
        await upstream.aclose()
        await client.aclose()


class MediaProxy:
    """Forwards image and video requests to the bound Immich session.

    The routes are added to an application once; re-negotiation only rebinds
    the target so rewrites follow the newest resolved API level.
    """

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._target: ProxyTarget | None = None
        self._transport = transport
        self.router = APIRouter(tags=["media"])
        self.router.add_api_route(
            IMAGE_PROXY_PREFIX + "/{asset_id}",
            self.proxy_image,
            methods=["GET"],
            response_class=StreamingResponse,
        )
        self.router.add_api_route(
            VIDEO_PROXY_PREFIX + "/{asset_id}",
            self.proxy_video,
            methods=["GET"],
            response_class=StreamingResponse,
        )

    @property
    def target(self) -> ProxyTarget | None:
        return self._target

    def bind(self, target: ProxyTarget, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._target = target
        if transport is not None:
            self._transport = transport

    async def proxy_image(self, request: Request, asset_id: str) -> StreamingResponse:
        return await self._forward(request, asset_id, endpoint="asset_download", accept=IMAGE_ACCEPT)

    async def proxy_video(self, request: Request, asset_id: str) -> StreamingResponse:
        return await self._forward(request, asset_id, endpoint="video_stream", accept=VIDEO_ACCEPT)

    async def _forward(
        self,
        request: Request,
        asset_id: str,
        *,
        endpoint: str,
        accept: str,
    ) -> StreamingResponse:
        target = self._target
        if target is None:
            raise HTTPException(status_code=503, detail="Immich session is not ready")

        headers = {"x-api-key": target.api_key, "Accept": accept}
        range_header = request.headers.get("range")
        if range_header:
            headers["Range"] = range_header

        remote_url = target.remote_url(endpoint, asset_id)
        client = httpx.AsyncClient(timeout=target.timeout_seconds, transport=self._transport)
        try:
            upstream = await client.send(
                client.build_request("GET", remote_url, headers=headers),
                stream=True,
            )
        except httpx.HTTPError as exc:
            await client.aclose()
            LOGGER.warning("Proxying %s for asset '%s' failed: %s", endpoint, asset_id, exc)
            raise HTTPException(status_code=502, detail="Immich media request failed") from exc

        passthrough = {
            name: upstream.headers[name] for name in PASSTHROUGH_HEADERS if name in upstream.headers
        }
        return StreamingResponse(
            _relay(upstream, client),
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
            headers=passthrough,
        )


def install_media_proxy(
    application: FastAPI,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> MediaProxy:
    existing = getattr(application.state, "media_proxy", None)
    if isinstance(existing, MediaProxy):
        return existing

    proxy = MediaProxy(transport=transport)
    application.include_router(proxy.router)
    application.state.media_proxy = proxy
    LOGGER.info("Media proxy routes installed at %s and %s", IMAGE_PROXY_PREFIX, VIDEO_PROXY_PREFIX)
    return proxy
