# paygate/api/payment_router.py

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from paygate.services.payment.engine import PaymentEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment")

CATEGORY = "PAYMENT_API"


def get_engine(request: Request) -> PaymentEngine:
    return request.app.state.payment_engine


# ---------- МОДЕЛИ запросов ----------
class CreatePaymentRequest(BaseModel):
    merchant_order_no: str
    amount: Decimal
    currency: str
    subject: str
    body: Optional[str] = None
    channel_code: Optional[str] = None
    payment_method: Optional[str] = None
    user_id: Optional[int] = None
    notify_url: Optional[str] = None
    return_url: Optional[str] = None
    extra_params: Optional[Dict[str, Any]] = None


class RefundRequest(BaseModel):
    order_no: str
    amount: Optional[Decimal] = None
    reason: str = ""


def ok(data=None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


# ---------- СОЗДАНИЕ ПЛАТЕЖА ----------
@router.post("/create")
async def create_payment(payload: CreatePaymentRequest, engine: PaymentEngine = Depends(get_engine)):
    result = await engine.create_payment(payload.model_dump(exclude_none=True))
    return ok(result, "Payment created")


async def _read_callback_payload(request: Request) -> dict:
    """Провайдеры шлют JSON или форму; query-параметры тоже учитываем."""
    content_type = request.headers.get("content-type", "")
    body: Any = {}
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Callback body is not valid JSON", extra={"category": CATEGORY})
            body = {}
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        body = {key: value for key, value in form.items() if isinstance(value, str)}

    if not isinstance(body, dict):
        body = {}
    return {**dict(request.query_params), **body}


# ---------- WEBHOOK провайдера ----------
@router.post("/callback/{channel_code}")
async def payment_callback(channel_code: str, request: Request, engine: PaymentEngine = Depends(get_engine)):
    payload = await _read_callback_payload(request)
    request_meta = {
        "method": request.method,
        "headers": dict(request.headers),
        "params": dict(request.query_params),
        "client_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    logger.info(
        "Payment callback received",
        extra={"category": CATEGORY, "channel_code": channel_code, "order_no": payload.get("order_no")},
    )

    try:
        result = await engine.handle_callback(channel_code, payload, request_meta)
    except Exception:
        # Провайдер должен получить FAIL и повторить доставку
        logger.exception("Callback handling crashed", extra={"category": CATEGORY, "channel_code": channel_code})
        return PlainTextResponse("FAIL", status_code=400)

    return PlainTextResponse(result.response, status_code=200 if result.success else 400)


# ---------- СТАТУС ЗАКАЗА ----------
@router.get("/query/{order_no}")
async def query_order(order_no: str, engine: PaymentEngine = Depends(get_engine)):
    return ok(await engine.query_order(order_no))


@router.post("/refund")
async def refund(payload: RefundRequest, engine: PaymentEngine = Depends(get_engine)):
    result = await engine.refund(payload.order_no, payload.amount, payload.reason)
    return ok(result, "Refund processed")


@router.get("/channels")
async def available_channels(
    currency: Optional[str] = None,
    amount: Optional[Decimal] = None,
    payment_method: Optional[str] = None,
    engine: PaymentEngine = Depends(get_engine),
):
    filters = {"currency": currency, "amount": amount, "payment_method": payment_method}
    return ok(await engine.get_available_channels(filters))


@router.get("/orders")
async def list_orders(
    status: Optional[str] = None,
    channel_id: Optional[int] = None,
    user_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
    engine: PaymentEngine = Depends(get_engine),
):
    filters = {
        "status": status,
        "channel_id": channel_id,
        "user_id": user_id,
        "start_date": start_date,
        "end_date": end_date,
    }
    return ok(await engine.order_manager.list_orders(filters, page, limit))


@router.get("/orders/{order_id}")
async def order_detail(order_id: int, engine: PaymentEngine = Depends(get_engine)):
    return ok(await engine.order_manager.get_order_detail(order_id))


@router.post("/sync/{order_no}")
async def sync_order(order_no: str, engine: PaymentEngine = Depends(get_engine)):
    return ok(await engine.sync_order_status(order_no), "Order synced")
