"""
SnagLink access service.

Run with: uvicorn --factory snaglink.main:create_app
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from .audit import AuditRecorder, AuditSink, get_audit_sink
from .auth import bearer_token, decode_owner_token
from .config import Settings, validate_settings
from .db import SqliteStore, Store
from .dispatch import BackgroundDispatcher
from .errors import Locked, PinMismatch, PinNotConfigured, RateLimited, SnagLinkError
from .links import LinkService
from .logging_config import configure_logging, get_request_id, set_request_id
from .models import (
    AuditEventType, CallerInfo, CreateMagicLinkRequest, MagicLinkResponse,
    PinVerificationResponse, ResourceType, ValidationResponse, VerifyPinRequest,
)
from .notify import WebhookNotifier
from .pin_gate import PinGate, PinOutcome
from .rate_limit import RateLimitAction, RateLimiter, RateLimitResult, RateLimitSweeper
from .security import ValidationError, extract_caller, validate_pin_attempt
from .util import now_epoch, utc_rfc3339
from .validator import LinkStatus, LinkValidator, ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: Store
    clock: Callable[[], int]
    dispatcher: BackgroundDispatcher
    audit: AuditRecorder
    limiter: RateLimiter
    sweeper: RateLimitSweeper
    validator: LinkValidator
    pin_gate: PinGate
    notifier: WebhookNotifier
    links: LinkService


def build_services(settings: Settings, store: Store, clock: Callable[[], int],
                   audit_sink: Optional[AuditSink] = None) -> Services:
    dispatcher = BackgroundDispatcher(maxsize=settings.dispatch_queue_size)
    audit = AuditRecorder(audit_sink or get_audit_sink(settings, store), dispatcher, clock=clock)
    limiter = RateLimiter(store, settings.rate_limits, clock=clock)
    pin_gate = PinGate(store, max_attempts=settings.pin_max_attempts,
                       lockout_seconds=settings.pin_lockout_seconds,
                       scheme=settings.pin_hash_scheme, clock=clock)
    notifier = WebhookNotifier(settings.notify_webhook_url, dispatcher,
                               timeout=settings.notify_timeout_seconds)
    return Services(
        settings=settings,
        store=store,
        clock=clock,
        dispatcher=dispatcher,
        audit=audit,
        limiter=limiter,
        sweeper=RateLimitSweeper(limiter, settings.rate_limit_sweep_seconds),
        validator=LinkValidator(store, clock=clock),
        pin_gate=pin_gate,
        notifier=notifier,
        links=LinkService(store, pin_gate, audit, notifier=notifier,
                          base_url=settings.base_url, clock=clock),
    )


# ------------------------------------------------------------
# Response helpers
# ------------------------------------------------------------

def rate_limit_headers(result: Optional[RateLimitResult]) -> Dict[str, str]:
    if result is None:
        return {}
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    if not result.allowed and result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def respond(request: Request, status_code: int, body: Any = None,
            retry_after: Optional[int] = None) -> Response:
    headers = rate_limit_headers(getattr(request.state, "rate_limit", None))
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    if body is None:
        return Response(status_code=status_code, headers=headers)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_caller(request: Request) -> CallerInfo:
    return extract_caller(request.headers, request.client.host if request.client else None,
                          trust_proxy=get_services(request).settings.trust_proxy_headers)


def enforce_rate_limit(request: Request, key: str, action: RateLimitAction,
                       caller: CallerInfo, actor_id: Optional[str] = None) -> None:
    services = get_services(request)
    result = services.limiter.check(key, action)
    request.state.rate_limit = result
    if not result.allowed:
        services.audit.log(
            AuditEventType.RATE_LIMIT_EXCEEDED,
            ResourceType.USER,
            actor_id=actor_id,
            caller=caller,
            success=False,
            detail={"action": action.value},
        )
        raise RateLimited(result.retry_after or 0, result.limit, result.reset_at)


def public_limit(action: RateLimitAction) -> Callable[[Request], CallerInfo]:
    """Dependency charging the caller's IP against an action budget."""
    def dependency(request: Request) -> CallerInfo:
        caller = get_caller(request)
        enforce_rate_limit(request, f"ip:{caller.ip_address}", action, caller)
        return caller
    return dependency


def require_owner(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Authenticate the link owner and charge their api_call budget."""
    services = get_services(request)
    owner_id = decode_owner_token(bearer_token(authorization), services.settings.jwt_secret)
    enforce_rate_limit(request, f"user:{owner_id}", RateLimitAction.API_CALL,
                       get_caller(request), actor_id=owner_id)
    return owner_id


def validation_body(result: ValidationResult) -> Dict[str, Any]:
    if not result.valid:
        err = result.error()
        return ValidationResponse(
            valid=False,
            code=err.code,
            message=err.message,
            retry_after_seconds=result.retry_after,
        ).model_dump(exclude_none=True)
    link = result.link
    return ValidationResponse(
        valid=True,
        access_level=link.access_level.value,
        requires_pin=link.requires_pin,
        expires_at=utc_rfc3339(link.expires_at),
        snag_ids=list(link.snag_ids),
        project_id=link.project_id,
    ).model_dump(exclude_none=True)


def complete_validation(request: Request, result: ValidationResult, caller: CallerInfo) -> Response:
    services = get_services(request)
    link = result.link
    if result.valid:
        services.validator.record_access(link, caller, pin_verified=False)
    services.audit.log(
        AuditEventType.MAGIC_LINK_VALIDATED,
        ResourceType.MAGIC_LINK,
        resource_id=link.id if link else None,
        caller=caller,
        success=result.valid,
        detail=None if result.valid else {"reason": result.status.value},
    )
    return respond(request, 200, validation_body(result))


# ------------------------------------------------------------
# Application factory
# ------------------------------------------------------------

def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None,
               clock: Optional[Callable[[], int]] = None,
               audit_sink: Optional[AuditSink] = None, configure_logs: bool = True) -> FastAPI:
    settings = settings or Settings()
    if configure_logs:
        configure_logging(settings.log_level, settings.log_json)
    validate_settings(settings)
    owns_store = store is None
    store = store or SqliteStore(settings.db_path)
    store.init()
    services = build_services(settings, store, clock or now_epoch, audit_sink)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.dispatcher.start()
        services.sweeper.start()
        yield
        services.sweeper.stop()
        services.dispatcher.close()
        if owns_store and isinstance(store, SqliteStore):
            store.close()

    app = FastAPI(title="SnagLink Access Service", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id") or None)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(SnagLinkError)
    async def snaglink_error_handler(request: Request, exc: SnagLinkError):
        body = exc.to_dict()
        if exc.status_code >= 500:
            logger.error("request failed: %s", exc.message)
            body["request_id"] = get_request_id()
        return respond(request, exc.status_code, body,
                       retry_after=getattr(exc, "retry_after", None))

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return respond(request, 400, {"code": "VALIDATION_ERROR", "field": exc.field, "message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in exc.errors()]
        return respond(request, 400, {"code": "VALIDATION_ERROR", "field": ", ".join(f for f in fields if f),
                                      "message": "Invalid request body"})

    # --------------------------------------------------------
    # Public contractor endpoints
    # --------------------------------------------------------

    @app.get("/api/v1/magic-links/{token}/validate")
    def validate_token(token: str, request: Request,
                       caller: CallerInfo = Depends(public_limit(RateLimitAction.TOKEN_LOOKUP))):
        return complete_validation(request, services.validator.validate(token), caller)

    @app.get("/m/{slug}")
    def validate_slug(slug: str, request: Request,
                      caller: CallerInfo = Depends(public_limit(RateLimitAction.TOKEN_LOOKUP))):
        return complete_validation(request, services.validator.validate_slug(slug), caller)

    @app.post("/api/v1/magic-links/{token}/verify-pin")
    def verify_pin(token: str, body: VerifyPinRequest, request: Request,
                   caller: CallerInfo = Depends(public_limit(RateLimitAction.PIN_ATTEMPT))):
        pin = validate_pin_attempt(body.pin)
        result = services.validator.validate(token)
        if result.status in (LinkStatus.NOT_FOUND, LinkStatus.REVOKED, LinkStatus.EXPIRED):
            services.audit.log(AuditEventType.PIN_VERIFY_FAILURE, ResourceType.MAGIC_LINK,
                               resource_id=result.link.id if result.link else None,
                               caller=caller, success=False,
                               detail={"reason": result.status.value})
            raise result.error()
        link = result.link

        outcome = services.pin_gate.verify(pin, link)

        if outcome.outcome == PinOutcome.VERIFIED:
            services.validator.record_access(link, caller, pin_verified=True)
            services.audit.log(AuditEventType.PIN_VERIFY_SUCCESS, ResourceType.MAGIC_LINK,
                               resource_id=link.id, caller=caller)
            return respond(request, 200, PinVerificationResponse(
                verified=True,
                access_level=link.access_level.value,
                snag_ids=list(link.snag_ids),
                project_id=link.project_id,
            ).model_dump(exclude_none=True))

        if outcome.outcome == PinOutcome.NOT_CONFIGURED:
            services.audit.log(AuditEventType.PIN_VERIFY_FAILURE, ResourceType.MAGIC_LINK,
                               resource_id=link.id, caller=caller, success=False,
                               detail={"reason": "not_configured"})
            raise PinNotConfigured()

        if outcome.outcome == PinOutcome.LOCKED:
            services.audit.log(AuditEventType.PIN_VERIFY_FAILURE, ResourceType.MAGIC_LINK,
                               resource_id=link.id, caller=caller, success=False,
                               detail={"reason": "locked"})
            err = Locked(retry_after=outcome.retry_after or 0)
            return respond(request, err.status_code, {"verified": False, **err.to_dict()},
                           retry_after=err.retry_after)

        if outcome.outcome == PinOutcome.MISMATCH:
            services.audit.log(AuditEventType.PIN_VERIFY_FAILURE, ResourceType.MAGIC_LINK,
                               resource_id=link.id, caller=caller, success=False,
                               detail={"attempts_remaining": outcome.attempts_remaining})
            if outcome.locked:
                services.audit.log(AuditEventType.PIN_LOCKOUT, ResourceType.MAGIC_LINK,
                                   resource_id=link.id, caller=caller, success=False,
                                   detail={"lockout_seconds": services.pin_gate.lockout_seconds})
                err = Locked(retry_after=outcome.retry_after or 0)
                return respond(request, err.status_code,
                               {"verified": False, "attempts_remaining": 0, **err.to_dict()},
                               retry_after=err.retry_after)
            err = PinMismatch(attempts_remaining=outcome.attempts_remaining)
            return respond(request, err.status_code, {"verified": False, **err.to_dict()})

        raise ValueError(f"unhandled PIN outcome: {outcome.outcome}")

    # --------------------------------------------------------
    # Owner endpoints
    # --------------------------------------------------------

    @app.post("/api/v1/magic-links")
    def create_magic_link(body: CreateMagicLinkRequest, request: Request,
                          owner_id: str = Depends(require_owner)):
        link = services.links.create_link(owner_id, body, get_caller(request))
        return respond(request, 201, MagicLinkResponse.from_link(
            link, include_token=True, base_url=services.settings.base_url).model_dump())

    @app.get("/api/v1/magic-links")
    def list_magic_links(request: Request, owner_id: str = Depends(require_owner)):
        links = services.links.list_links(owner_id)
        return respond(request, 200, [
            MagicLinkResponse.from_link(link, base_url=services.settings.base_url).model_dump()
            for link in links
        ])

    @app.delete("/api/v1/magic-links/{link_id}")
    def revoke_magic_link(link_id: str, request: Request, owner_id: str = Depends(require_owner)):
        services.links.revoke_link(owner_id, link_id, get_caller(request))
        return respond(request, 204)

    @app.get("/api/v1/magic-links/{link_id}/analytics")
    def magic_link_analytics(link_id: str, request: Request, owner_id: str = Depends(require_owner)):
        stats = services.links.analytics(owner_id, link_id, get_caller(request))
        return respond(request, 200, stats.model_dump())

    @app.get("/health")
    def health():
        return {"status": "ok", "env": services.settings.env, "time": utc_rfc3339(services.clock())}

    return app
