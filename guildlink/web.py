from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, MutableMapping

from aiohttp import web

from .core import CoreCharacter, CoreGroup
from .service import DiscordService

LOGGER = logging.getLogger(__name__)


@dataclass
class HostRequest:
    """Who is calling, as resolved by the host platform."""

    character: CoreCharacter
    groups: List[CoreGroup] = field(default_factory=list)
    session: MutableMapping[str, Any] = field(default_factory=dict)


HostResolver = Callable[[web.Request], Awaitable[HostRequest]]


class ServiceRoutes:
    def __init__(self, service: DiscordService, resolve_host: HostResolver):
        self.service = service
        self.resolve_host = resolve_host

    async def handle(self, request: web.Request) -> web.Response:
        name = request.match_info.get("name", "")
        host = await self.resolve_host(request)
        result = await self.service.request(
            host.character, name, dict(request.query), host.session, host.groups
        )
        if result.status == 404:
            LOGGER.debug("Unknown service request %r", name)
        return web.Response(status=result.status, headers=result.headers, text=result.body)


def create_app(service: DiscordService, resolve_host: HostResolver) -> web.Application:
    app = web.Application()
    routes = ServiceRoutes(service, resolve_host)
    app.router.add_get("/{name}", routes.handle)

    async def _close_service(_app: web.Application):
        await service.close()

    app.on_cleanup.append(_close_service)
    return app
