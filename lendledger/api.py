"""HTTP boundary for the lending ledger.

Exposes the ledger's operations and queries as a small JSON API on
``aiohttp.web``, alongside the Prometheus ``/metrics`` and ``/health``
endpoints. Ledger rejections are returned as JSON with the failed check.
"""

import logging
from dataclasses import asdict, is_dataclass
from enum import Enum
from fractions import Fraction
from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from lendledger.core.errors import (
    InsufficientCollateral,
    InsufficientLiquidity,
    InvalidInput,
    LedgerError,
    LoanNotLiquidatable,
    PoolUnavailable,
    TransferFailed,
)
from lendledger.core.ledger import LendingLedger
from lendledger.services.metrics import get_metrics, get_content_type

logger = logging.getLogger(__name__)

LEDGER_KEY = web.AppKey("ledger", LendingLedger)

ERROR_STATUS = {
    InvalidInput: 400,
    PoolUnavailable: 404,
    InsufficientLiquidity: 409,
    InsufficientCollateral: 409,
    LoanNotLiquidatable: 409,
    TransferFailed: 502,
}


class DepositRequest(BaseModel):
    user: str = Field(min_length=1)
    asset: str = Field(min_length=1)
    amount: int = Field(gt=0)


class WithdrawRequest(DepositRequest):
    pass


class BorrowRequest(BaseModel):
    user: str = Field(min_length=1)
    borrow_asset: str = Field(min_length=1)
    borrow_amount: int = Field(gt=0)
    collateral_asset: str = Field(min_length=1)
    collateral_amount: int = Field(gt=0)


class RepayRequest(BaseModel):
    user: str = Field(min_length=1)
    loan_id: int = Field(ge=0)


class LiquidateRequest(BaseModel):
    liquidator: str = Field(min_length=1)
    borrower: str = Field(min_length=1)
    loan_id: int = Field(ge=0)


def to_json(value: Any) -> Any:
    """Convert ledger views to JSON-safe values.

    Integers are emitted as strings once they exceed what a JSON double holds
    exactly; share prices are emitted as exact ``"num/den"`` fractions.
    """
    if is_dataclass(value) and not isinstance(value, type):
        data = {k: to_json(v) for k, v in asdict(value).items()}
        for name in ("debt", "balance"):
            if hasattr(value, name):
                data[name] = to_json(getattr(value, name))
        return data
    if isinstance(value, dict):
        return {str(k): to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Fraction):
        return str(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and abs(value) > 2**53:
        return str(value)
    return value


def error_response(error: LedgerError) -> web.Response:
    status = ERROR_STATUS.get(type(error), 400)
    return web.json_response(error.to_dict(), status=status)


async def parse_body(request: web.Request, model: type[BaseModel]) -> BaseModel:
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidInput("Request body must be JSON", {"check": "json_body"}) from e
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidInput(
            "Request body failed validation",
            {"check": "request_schema", "errors": e.errors(include_url=False, include_context=False)},
        ) from e


@web.middleware
async def ledger_error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except LedgerError as e:
        logger.warning(f"{request.method} {request.path} rejected: {e.kind}: {e.message}")
        return error_response(e)


def _loan_id(request: web.Request) -> int:
    raw = request.match_info["loan_id"]
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidInput(
            f"Loan id must be an integer, got {raw!r}", {"check": "loan_id"}
        ) from e


async def metrics_handler(_request: web.Request) -> web.Response:
    """Prometheus metrics endpoint."""
    # The Prometheus content type carries a charset, which content_type= rejects
    return web.Response(
        body=get_metrics(),
        headers={"Content-Type": get_content_type()},
    )


async def health_handler(_request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "healthy"})


async def assets_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    return web.json_response({"assets": ledger.get_supported_assets()})


async def pool_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    summary = ledger.get_pool_summary(request.match_info["asset"])
    return web.json_response(to_json(summary))


async def deposit_state_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    position = ledger.get_deposit(request.match_info["user"], request.match_info["asset"])
    return web.json_response(to_json(position))


async def loans_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    return web.json_response({"loans": to_json(ledger.list_loans(request.match_info["user"]))})


async def loan_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    position = ledger.get_loan(request.match_info["user"], _loan_id(request))
    return web.json_response(to_json(position))


async def loan_interest_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    interest = ledger.get_loan_interest(request.match_info["user"], _loan_id(request))
    return web.json_response({"interest": to_json(interest)})


async def loan_ratio_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    ratio = ledger.get_collateral_ratio(request.match_info["user"], _loan_id(request))
    return web.json_response({"collateral_ratio": ratio})


async def liquidatable_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    return web.json_response({"loans": to_json(ledger.find_liquidatable_loans())})


async def deposit_handler(request: web.Request) -> web.Response:
    body = await parse_body(request, DepositRequest)
    position = await request.app[LEDGER_KEY].deposit(body.user, body.asset, body.amount)
    return web.json_response(to_json(position))


async def withdraw_handler(request: web.Request) -> web.Response:
    body = await parse_body(request, WithdrawRequest)
    position = await request.app[LEDGER_KEY].withdraw(body.user, body.asset, body.amount)
    return web.json_response(to_json(position))


async def borrow_handler(request: web.Request) -> web.Response:
    body = await parse_body(request, BorrowRequest)
    position = await request.app[LEDGER_KEY].borrow(
        body.user,
        body.borrow_asset,
        body.borrow_amount,
        body.collateral_asset,
        body.collateral_amount,
    )
    return web.json_response(to_json(position), status=201)


async def repay_handler(request: web.Request) -> web.Response:
    body = await parse_body(request, RepayRequest)
    position = await request.app[LEDGER_KEY].repay_loan(body.user, body.loan_id)
    return web.json_response(to_json(position))


async def liquidate_handler(request: web.Request) -> web.Response:
    body = await parse_body(request, LiquidateRequest)
    result = await request.app[LEDGER_KEY].liquidate(body.liquidator, body.borrower, body.loan_id)
    return web.json_response(to_json(result))


def create_app(ledger: LendingLedger) -> web.Application:
    app = web.Application(middlewares=[ledger_error_middleware])
    app[LEDGER_KEY] = ledger

    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/health", health_handler)

    app.router.add_get("/assets", assets_handler)
    app.router.add_get("/pools/{asset}", pool_handler)
    app.router.add_get("/deposits/{user}/{asset}", deposit_state_handler)
    app.router.add_get("/liquidatable", liquidatable_handler)
    app.router.add_get("/loans/{user}", loans_handler)
    app.router.add_get("/loans/{user}/{loan_id}", loan_handler)
    app.router.add_get("/loans/{user}/{loan_id}/interest", loan_interest_handler)
    app.router.add_get("/loans/{user}/{loan_id}/ratio", loan_ratio_handler)

    app.router.add_post("/deposit", deposit_handler)
    app.router.add_post("/withdraw", withdraw_handler)
    app.router.add_post("/borrow", borrow_handler)
    app.router.add_post("/repay", repay_handler)
    app.router.add_post("/liquidate", liquidate_handler)

    return app
