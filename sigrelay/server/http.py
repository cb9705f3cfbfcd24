from __future__ import annotations

import asyncio
from http import HTTPStatus
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlsplit

from websockets.asyncio.server import ServerConnection
from websockets.datastructures import Headers
from websockets.http11 import Request, Response

from sigrelay.core.ice import IceServerProvider
from sigrelay.utils import codec


ICE_SERVERS_PATH = "/ice-servers"

CONTENT_TYPES = {
    ".html": "text/html",
    ".js": "application/javascript",
    ".ico": "image/x-icon",
    ".css": "text/css",
    ".json": "application/json",
}


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), "text/plain")


def make_response(status: HTTPStatus, body: bytes, content_type: str) -> Response:
    headers = Headers()
    headers["Content-Type"] = content_type
    headers["Content-Length"] = str(len(body))
    headers["Connection"] = "close"
    return Response(status.value, status.phrase, headers, body)


def not_found() -> Response:
    return make_response(HTTPStatus.NOT_FOUND, b"not found", "text/plain")


class HttpFrontend:
    """Plain HTTP requests that arrive on the WebSocket port.

    Used as the ``process_request`` hook: returning ``None`` lets the
    WebSocket handshake continue, anything else is sent as the response.
    """

    def __init__(self, static_dir: Path, ice_provider: IceServerProvider) -> None:
        self.static_dir = Path(static_dir)
        self.ice_provider = ice_provider

    async def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None

        path = unquote(urlsplit(request.path).path)
        if path == ICE_SERVERS_PATH:
            servers = await self.ice_provider.ice_servers()
            body = codec.dumps({"ice_servers": servers}).encode("utf-8")
            return make_response(HTTPStatus.OK, body, "application/json")

        return await self.serve_static(path, referer=request.headers.get("Referer", ""))

    def resolve(self, path: str, referer: str = "") -> Optional[Path]:
        if path == "/":
            path = "/index.html"
        if path == "/favicon.ico" and "ctrl.html" in referer:
            path = "/dish.ico"

        root = self.static_dir.resolve()
        try:
            candidate = (root / path.lstrip("/")).resolve()
            if not candidate.is_relative_to(root) or not candidate.is_file():
                return None
        except (ValueError, OSError):
            # embedded NUL bytes, overlong names
            return None
        return candidate

    async def serve_static(self, path: str, referer: str = "") -> Response:
        target = self.resolve(path, referer)
        if target is None:
            return not_found()
        try:
            body = await asyncio.to_thread(target.read_bytes)
        except OSError:
            return not_found()
        return make_response(HTTPStatus.OK, body, content_type_for(target.name))


__all__ = ["HttpFrontend", "content_type_for", "make_response", "ICE_SERVERS_PATH"]
