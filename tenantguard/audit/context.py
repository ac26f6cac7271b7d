"""
Request context for audit annotation.

Audit records carry where a request came from (client address, user
agent, url). That metadata is set once at request entry and picked up
by the audit log without every caller threading it through.

This context is annotation only. The acting principal is never read
from here; it is always passed explicitly to the decision engine.

Example:
    from tenantguard.audit.context import RequestContext, get_request_context

    with RequestContext(ip="10.0.0.8", user_agent="curl/8.0", url="/api/tenants"):
        ctx = get_request_context()
        assert ctx.ip == "10.0.0.8"
"""

from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import Any, Callable
import logging
import uuid

from tenantguard.audit.events import AuditContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContextData:
    """Request metadata.

    Attributes:
        ip: Client address.
        user_agent: Client user agent string.
        url: Request path.
        request_id: Unique identifier for this request.
    """

    ip: str | None = None
    user_agent: str | None = None
    url: str | None = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_audit_context(self) -> AuditContext:
        return AuditContext(ip=self.ip, user_agent=self.user_agent, url=self.url)


_request_context: ContextVar[RequestContextData | None] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> RequestContextData | None:
    """Get the metadata of the current request, if any."""
    return _request_context.get()


def current_audit_context() -> AuditContext:
    """AuditContext for the current request, or an empty one."""
    data = _request_context.get()
    if data is None:
        return AuditContext()
    return data.to_audit_context()


class RequestContext:
    """Context manager establishing request metadata for a block.

    Works as both a synchronous and an async context manager and
    restores the previous value on exit, so nesting is safe.

    Example:
        async with RequestContext(ip="10.0.0.8", url="/api/audit/events"):
            await audit_log.log_view("tenant", "t-1", principal_id="u-1")
    """

    def __init__(
        self,
        ip: str | None = None,
        user_agent: str | None = None,
        url: str | None = None,
        request_id: str | None = None,
    ):
        self._data = RequestContextData(
            ip=ip,
            user_agent=user_agent,
            url=url,
            request_id=request_id or str(uuid.uuid4()),
        )
        self._token: Token[RequestContextData | None] | None = None

    @property
    def data(self) -> RequestContextData:
        return self._data

    def __enter__(self) -> "RequestContext":
        self._token = _request_context.set(self._data)
        logger.debug("Entered request context %s", self._data.request_id)
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: Exception | None,
        exc_tb: Any | None,
    ) -> None:
        if self._token is not None:
            _request_context.reset(self._token)
            self._token = None

    async def __aenter__(self) -> "RequestContext":
        return self.__enter__()

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: Exception | None,
        exc_tb: Any | None,
    ) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


class RequestContextMiddleware:
    """ASGI middleware that records request metadata for audit events.

    The client address is taken from ``X-Forwarded-For`` (first hop)
    when present, otherwise from the ASGI scope.

    Example:
        from fastapi import FastAPI
        from tenantguard.audit.context import RequestContextMiddleware

        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)
    """

    def __init__(self, app: Any, forwarded_header: str = "X-Forwarded-For"):
        self.app = app
        self.forwarded_header = forwarded_header.lower()

    async def __call__(
        self,
        scope: dict[str, Any],
        receive: Callable[..., Any],
        send: Callable[..., Any],
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async with RequestContext(**self._extract(scope)):
            await self.app(scope, receive, send)

    def _extract(self, scope: dict[str, Any]) -> dict[str, str | None]:
        # ASGI header values are latin-1 bytes.
        headers = {k.lower(): v for k, v in scope.get("headers", [])}

        ip: str | None = None
        forwarded = headers.get(self.forwarded_header.encode())
        if forwarded:
            ip = forwarded.decode("latin-1").split(",")[0].strip() or None
        if ip is None and scope.get("client"):
            ip = scope["client"][0]

        agent = headers.get(b"user-agent")
        request_id = headers.get(b"x-request-id")
        return {
            "ip": ip,
            "user_agent": agent.decode("latin-1") if agent else None,
            "url": scope.get("path"),
            "request_id": request_id.decode("latin-1")[:128] if request_id else None,
        }
