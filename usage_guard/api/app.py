"""HTTP surface for the usage guard.

POST /api/usage/check  - charge the caller's daily budget (429 when exhausted)
GET  /api/usage        - current period's usage for the caller

Authentication is delegated to the identity provider in front of this
service; the authenticated user id arrives in the X-User-Id header.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from usage_guard.config.loader import GuardConfig
from usage_guard.core.guard import UsageGuard
from usage_guard.storage.repository import StorageUnavailable

logger = logging.getLogger(__name__)

UNAUTHORIZED = "UNAUTHORIZED"
BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
INVALID_INPUT = "INVALID_INPUT"
SERVER_ERROR = "SERVER_ERROR"


class UsageCheckRequest(BaseModel):
    estimated_units: Optional[int] = None
    operation: Optional[str] = None


class ApiError(Exception):
    """Error rendered as a JSON body with a stable error code."""
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def _error_response(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": code, **extra},
    )


def _money(amount: Decimal) -> str:
    return str(amount)


def get_guard(request: Request) -> UsageGuard:
    return request.app.state.guard


def get_config(request: Request) -> GuardConfig:
    return request.app.state.config


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise ApiError(401, UNAUTHORIZED, "Unauthorized")
    return x_user_id.strip()


def create_app(guard: UsageGuard, config: GuardConfig) -> FastAPI:
    """Build the FastAPI application around an already-constructed guard."""
    app = FastAPI(title="Usage Guard")
    app.state.guard = guard
    app.state.config = config

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return _error_response(exc.status_code, exc.code, exc.message)

    @app.post("/api/usage/check")
    def check_usage(
        body: UsageCheckRequest,
        user_id: str = Depends(get_user_id),
        guard: UsageGuard = Depends(get_guard),
        config: GuardConfig = Depends(get_config),
    ):
        """Charge the caller's budget for a metered operation.

        Exactly one of ``estimated_units`` or ``operation`` must be given;
        an operation is charged its configured estimate.
        """
        if (body.estimated_units is None) == (body.operation is None):
            raise ApiError(400, INVALID_INPUT, "Provide exactly one of estimated_units or operation")

        try:
            units = body.estimated_units
            if units is None:
                units = config.estimate_for(body.operation)
            decision = guard.check_and_consume(user_id, units)
        except ValueError as e:
            raise ApiError(400, INVALID_INPUT, str(e))
        except StorageUnavailable:
            logger.error("Usage check failed for %s: storage unavailable", user_id)
            raise ApiError(503, SERVER_ERROR, "Usage storage unavailable")

        if not decision.allowed:
            return _error_response(
                429,
                BUDGET_EXCEEDED,
                "Daily budget exceeded",
                remaining_budget=_money(decision.remaining_budget),
                period_key=decision.period_key,
            )

        return {
            "allowed": True,
            "remaining_budget": _money(decision.remaining_budget),
            "period_key": decision.period_key,
        }

    @app.get("/api/usage")
    def current_usage(
        user_id: str = Depends(get_user_id),
        guard: UsageGuard = Depends(get_guard),
    ):
        try:
            record = guard.get_current_usage(user_id)
        except StorageUnavailable:
            logger.error("Usage lookup failed for %s: storage unavailable", user_id)
            raise ApiError(503, SERVER_ERROR, "Usage storage unavailable")

        return {
            "user_id": record.user_id,
            "period_key": record.period_key,
            "units_consumed": record.units_consumed,
            "cost_accrued": _money(record.cost_accrued),
            "daily_budget_cap": _money(guard.daily_budget_cap),
        }

    return app
