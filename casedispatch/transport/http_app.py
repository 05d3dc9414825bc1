# casedispatch/transport/http_app.py
"""
HTTP API for case dispatch.

Thin adapter: routes parse the body, call one service method and wrap the
result as ``{"success": true, "data": ...}``.  Domain errors become
``{"success": false, "error": {"code", "message"}}`` with the error's
status code.  Authentication happens upstream; ids arrive already
resolved.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional, Type, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from casedispatch.config import Settings, settings, validate_or_warn
from casedispatch.core.domain import CaseFilters
from casedispatch.core.errors import DispatchError, InvalidInputError
from casedispatch.infra.logging_config import get_logger, setup_logging
from casedispatch.infra.metrics import get_metrics_collector
from casedispatch.infra.wiring import DispatchServices, build_services
from casedispatch.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from casedispatch.transport.schemas import (
    AcceptIn,
    CompleteIn,
    CreateCaseIn,
    DeclineIn,
    ProviderIn,
    StatusIn,
)

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


# ============================================================================
# HELPERS
# ============================================================================

def get_services(request: Request) -> DispatchServices:
    return request.app.state.services


def describe_errors(errors) -> str:
    """``[{"loc": ("query", "page"), "msg": ...}]`` -> ``"query.page: ..."``"""
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
        for err in errors
    )


def parse_body(model: Type[M], payload: Any) -> M:
    """Validate a JSON body; validation problems are InvalidInput, not 422."""
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise InvalidInputError(describe_errors(exc.errors())) from None


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    s: Settings = fastapi_app.state.settings
    logger.info(f"Starting application: env={s.app_env}, backend={s.storage_backend}")

    validate_or_warn(s)

    owns_pool = False
    if getattr(fastapi_app.state, "services", None) is None:
        if s.storage_backend == "postgres":
            from casedispatch.infra.db_async import init_pool

            await init_pool(s)
            owns_pool = True
            logger.info("Database pool initialized")

            if s.run_migrations_on_startup:
                from casedispatch.infra.migrations_async import apply_migrations

                result = await apply_migrations()
                logger.info(f"Migrations applied: {result['applied']}")

        fastapi_app.state.services = build_services(s)

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    if owns_pool:
        from casedispatch.infra.db_async import close_pool

        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(
    s: Settings = settings,
    services: Optional[DispatchServices] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Passing ``services`` skips backend construction in the lifespan hook
    (tests hand in a memory-backed bundle).
    """
    app = FastAPI(
        title="Case Dispatch",
        description="Case lifecycle, provider queues and matching",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if s.is_production else "/docs",
        redoc_url=None if s.is_production else "/redoc",
        openapi_url=None if s.is_production else "/openapi.json",
    )
    app.state.settings = s
    app.state.services = services

    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=s.enable_request_logging)
    app.add_middleware(RequestIDMiddleware)

    _register_exception_handlers(app)
    _register_routes(app, s)
    return app


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.code.value}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.to_dict()},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Malformed path or query values get the same 400 envelope as bodies
        error = InvalidInputError(describe_errors(exc.errors()))
        return JSONResponse(
            status_code=error.status_code,
            content={"success": False, "error": error.to_dict()},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": {"code": "HTTP_ERROR", "message": exc.detail}},
            headers=exc.headers,
        )


def _register_routes(app: FastAPI, s: Settings) -> None:

    # ------------------------------------------------------------------
    # Health / metrics
    # ------------------------------------------------------------------

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.get("/ready")
    async def readiness(svc: DispatchServices = Depends(get_services)):
        if svc.backend != "postgres":
            return {"status": "healthy"}
        from casedispatch.infra.db_async import ping, pool_stats

        try:
            ok = await ping()
        except Exception:
            logger.warning("Readiness check failed", exc_info=True)
            ok = False
        if not ok:
            return JSONResponse(status_code=503, content={"status": "unhealthy"})
        return {"status": "healthy", "pool": pool_stats()}

    @app.get("/metrics")
    async def metrics(svc: DispatchServices = Depends(get_services)):
        if s.is_production:
            raise HTTPException(status_code=404, detail="Not found")
        data = get_metrics_collector().get_metrics()
        if svc.jobs is not None:
            try:
                data["outbox"] = await svc.jobs.count_by_status()
            except Exception:
                logger.warning("Could not read outbox depth", exc_info=True)
                data["outbox"] = None
        return data

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    @app.post("/cases")
    async def create_case(payload: dict, svc: DispatchServices = Depends(get_services)):
        body = parse_body(CreateCaseIn, payload)
        case = await svc.state_machine.create(body.to_input())
        return ok({"caseId": case.id, "case": case.to_dict()}, status_code=201)

    @app.get("/cases")
    async def search_cases(
        status: Optional[str] = None,
        category: Optional[str] = None,
        city: Optional[str] = None,
        neighborhood: Optional[str] = None,
        provider_id: Optional[str] = Query(default=None, alias="providerId"),
        customer_id: Optional[str] = Query(default=None, alias="customerId"),
        user_id: Optional[str] = Query(default=None, alias="userId"),
        only_unassigned: bool = Query(default=False, alias="onlyUnassigned"),
        exclude_declined_by: Optional[str] = Query(default=None, alias="excludeDeclinedBy"),
        page: int = 1,
        limit: int = 10,
        sort_by: str = Query(default="created_at", alias="sortBy"),
        sort_order: str = Query(default="desc", alias="sortOrder"),
        svc: DispatchServices = Depends(get_services),
    ):
        result = await svc.queue.search(
            CaseFilters(
                status=status,
                category=category,
                city=city,
                neighborhood=neighborhood,
                provider_id=provider_id,
                customer_id=customer_id,
                participant_id=user_id,
                only_unassigned=only_unassigned,
                exclude_declined_by=exclude_declined_by,
                page=page,
                limit=limit,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        )
        return ok({
            "cases": [c.to_dict() for c in result.cases],
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "totalPages": result.total_pages,
            },
        })

    @app.get("/cases/{case_id}")
    async def get_case(case_id: str, svc: DispatchServices = Depends(get_services)):
        case = await svc.state_machine.get(case_id)
        return ok(case.to_dict())

    @app.post("/cases/{case_id}/accept")
    async def accept_case(case_id: str, payload: dict, svc: DispatchServices = Depends(get_services)):
        body = parse_body(AcceptIn, payload)
        case = await svc.state_machine.accept(case_id, body.provider_id, body.provider_name)
        return ok({"caseId": case.id, "status": case.status.value, "providerId": case.provider_id})

    @app.post("/cases/{case_id}/decline")
    async def decline_case(case_id: str, payload: dict, svc: DispatchServices = Depends(get_services)):
        body = parse_body(DeclineIn, payload)
        result = await svc.state_machine.decline(case_id, body.provider_id, body.reason)
        return ok({"caseId": case_id, "returnedToQueue": result.returned_to_queue})

    @app.post("/cases/{case_id}/undecline")
    async def undecline_case(case_id: str, payload: dict, svc: DispatchServices = Depends(get_services)):
        body = parse_body(ProviderIn, payload)
        await svc.state_machine.undecline(case_id, body.provider_id)
        return ok({"caseId": case_id})

    @app.post("/cases/{case_id}/start")
    async def start_case(case_id: str, payload: dict, svc: DispatchServices = Depends(get_services)):
        body = parse_body(ProviderIn, payload)
        case = await svc.state_machine.start_work(case_id, body.provider_id)
        return ok({"caseId": case.id, "status": case.status.value})

    @app.post("/cases/{case_id}/complete")
    async def complete_case(case_id: str, payload: dict, svc: DispatchServices = Depends(get_services)):
        body = parse_body(CompleteIn, payload)
        income = body.income.to_entry() if body.income else None
        case = await svc.state_machine.complete(case_id, body.completion_notes, income)
        return ok({
            "caseId": case.id,
            "status": case.status.value,
            "completedAt": case.to_dict()["completedAt"],
        })

    @app.post("/cases/{case_id}/cancel")
    async def cancel_case(case_id: str, svc: DispatchServices = Depends(get_services)):
        case = await svc.state_machine.cancel(case_id)
        return ok({"caseId": case.id, "status": case.status.value})

    @app.put("/cases/{case_id}/status")
    async def update_case_status(case_id: str, payload: dict, svc: DispatchServices = Depends(get_services)):
        body = parse_body(StatusIn, payload)
        case = await svc.state_machine.update_status(case_id, body.status, body.message)
        return ok({"caseId": case.id, "status": case.status.value})

    @app.get("/cases/{case_id}/smart-matches")
    async def smart_matches(
        case_id: str,
        limit: int = s.smart_match_default_limit,
        svc: DispatchServices = Depends(get_services),
    ):
        ranked = await svc.dispatcher.smart_matches(case_id, limit)
        return ok({"caseId": case_id, "matches": [p.to_dict() for p in ranked]})

    @app.post("/cases/{case_id}/auto-assign")
    async def auto_assign(case_id: str, svc: DispatchServices = Depends(get_services)):
        provider_id = await svc.dispatcher.auto_assign(case_id)
        return ok({"caseId": case_id, "assigned": provider_id is not None, "providerId": provider_id})

    # ------------------------------------------------------------------
    # Provider views
    # ------------------------------------------------------------------

    @app.get("/providers/{provider_id}/available-cases")
    async def available_cases(
        provider_id: str,
        sort: Optional[str] = None,
        svc: DispatchServices = Depends(get_services),
    ):
        cases = await svc.queue.available_cases(provider_id, sort)
        return ok({"cases": [c.to_dict() for c in cases], "count": len(cases)})

    @app.get("/providers/{provider_id}/declined-cases")
    async def declined_cases(provider_id: str, svc: DispatchServices = Depends(get_services)):
        declined = await svc.queue.declined_cases(provider_id)
        return ok({"cases": [d.to_dict() for d in declined], "count": len(declined)})

    @app.get("/providers/{provider_id}/stats")
    async def provider_stats(provider_id: str, svc: DispatchServices = Depends(get_services)):
        stats = await svc.queue.provider_stats(provider_id)
        return ok(stats.to_dict())


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "casedispatch.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # request logging middleware covers prod
        server_header=False,
        date_header=False,
    )
