"""
FastAPI Webhook Server for the storefront fulfillment engine
Exposes dispatch, balance payment, payment callbacks, lease actions and admin operations
"""
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import Config
from database import test_connection
from jobs.lease_monitor_scheduler import LeaseMonitorScheduler
from models import FulfillmentKind, LeaseKind, Order, User, UserRole
from services.admin_fulfillment_service import AdminFulfillmentService, require_admin
from services.balance_ledger_service import BalanceLedgerService
from services.fulfillment_dispatcher import DispatchResult, FulfillmentDispatcher
from services.lease_lifecycle_monitor import LeaseLifecycleMonitor
from services.order_payment_service import CartLine, OrderPaymentService
from services.promo_code_service import PromoCodeService
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    ForbiddenError, FulfillmentError, OrderNotFoundError, UnauthorizedError, ValidationError,
)
from utils.request_context import RequestContext
from utils.webhook_signatures import verify_cryptobot_signature

logger = logging.getLogger(__name__)

# FulfillmentError.code -> HTTP status
ERROR_STATUS_CODES = {
    "validation_error": 400,
    "price_mismatch": 400,
    "invalid_promo_code": 400,
    "unauthorized": 401,
    "forbidden": 403,
    "product_not_found": 404,
    "user_not_found": 404,
    "order_not_found": 404,
    "lease_not_found": 404,
    "insufficient_funds": 409,
    "out_of_stock": 409,
    "purchase_limit_exceeded": 409,
    "order_not_paid": 409,
    "invalid_lease_state": 409,
    "inventory_item_sold": 409,
    "provider_unavailable": 502,
}

dispatcher = FulfillmentDispatcher()
lease_monitor = LeaseLifecycleMonitor(adapters=dispatcher.adapters)
payment_service = OrderPaymentService(dispatcher=dispatcher)
admin_service = AdminFulfillmentService()
lease_scheduler: Optional[LeaseMonitorScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the lease monitor jobs with the app and stop them on shutdown"""
    global lease_scheduler
    if Config.ENABLE_LEASE_MONITOR:
        lease_scheduler = LeaseMonitorScheduler(lease_monitor)
        lease_scheduler.start()
    else:
        logger.warning("⚠️ Lease monitor disabled (ENABLE_LEASE_MONITOR=false)")

    yield

    if lease_scheduler is not None:
        lease_scheduler.stop()
        lease_scheduler = None


app = FastAPI(
    title="Storefront Fulfillment Server",
    description="Order dispatch, payment callbacks and leased resource lifecycle",
    docs_url=None if Config.IS_PRODUCTION else "/docs",
    redoc_url=None,
    lifespan=lifespan
)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    status_code = ERROR_STATUS_CODES.get(exc.code, 400)
    if status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.code}: {exc.message}")
    else:
        logger.info(f"↩️ {request.method} {request.url.path}: {exc.code}: {exc.message}")
    content = {"error": exc.message, "code": exc.code}
    provider = getattr(exc, "provider", None)
    if provider:
        content["provider"] = provider
    return JSONResponse(content=content, status_code=status_code)


@app.exception_handler(ValueError)
async def invalid_value_handler(request: Request, exc: ValueError):
    """Unparseable amounts and quantities in request bodies"""
    logger.info(f"↩️ {request.method} {request.url.path}: invalid value: {exc}")
    return JSONResponse(content={"error": str(exc), "code": "validation_error"}, status_code=400)


# ----------------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------------

def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(MonetaryDecimal.quantize(value))


async def _read_json(request: Request) -> Dict[str, Any]:
    if not (await request.body()).strip():
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _int_field(body: Dict[str, Any], *names: str, required: bool = True) -> Optional[int]:
    for name in names:
        if body.get(name) not in (None, ""):
            try:
                return int(body[name])
            except (TypeError, ValueError):
                raise ValidationError(f"{name} must be an integer")
    if required:
        raise ValidationError(f"{names[0]} is required")
    return None


def _cart_lines(body: Dict[str, Any]) -> List[CartLine]:
    items = body.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    return [CartLine.from_dict(item) for item in items]


def _dispatch_dict(result: Optional[DispatchResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    return {
        "order_id": result.order_id,
        "status": result.status,
        "items_delivered": result.items_delivered,
        "delivered_content": result.delivered_content,
        "async_pending": result.async_pending,
        "already_processed": result.already_processed,
        "failed_lines": result.failed_lines,
    }


async def get_request_context(
    x_user_id: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
) -> RequestContext:
    """X-Admin-Token grants admin access; X-User-Id identifies the caller"""
    via_admin_token = bool(
        Config.ADMIN_API_TOKEN and x_admin_token and hmac.compare_digest(x_admin_token, Config.ADMIN_API_TOKEN)
    )
    user_id = None
    role = UserRole.USER
    if x_user_id:
        try:
            user_id = int(x_user_id)
        except ValueError:
            raise UnauthorizedError("Invalid X-User-Id header")
        with atomic_transaction() as tx:
            user = tx.get(User, user_id)
            if not user:
                raise UnauthorizedError(f"Unknown user {user_id}")
            if user.is_banned:
                raise ForbiddenError("Account is banned")
            role = UserRole(user.role)
    return RequestContext(user_id=user_id, role=role, via_admin_token=via_admin_token)


def _require_user(ctx: RequestContext) -> int:
    if ctx.user_id is None:
        raise UnauthorizedError("X-User-Id header required")
    return ctx.user_id


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@app.get("/health")
async def health_check():
    """Health check endpoint with database readiness"""
    database_ok = test_connection()
    running = bool(lease_scheduler and lease_scheduler.scheduler.running)
    return JSONResponse(
        content={
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "lease_monitor": running,
        },
        status_code=200 if database_ok else 503,
    )


# ----------------------------------------------------------------------------
# Orders and payments
# ----------------------------------------------------------------------------

@app.post("/orders/{order_id}/process")
async def process_order(order_id: int, ctx: RequestContext = Depends(get_request_context)):
    """Idempotent dispatch; the owner or an administrator may trigger it"""
    if not ctx.is_admin:
        user_id = _require_user(ctx)
        with atomic_transaction() as tx:
            order = tx.get(Order, order_id)
            if not order or order.user_id != user_id:
                raise OrderNotFoundError(f"Order {order_id} not found")
    result = await dispatcher.process_order(order_id)
    return _dispatch_dict(result)


@app.post("/orders/pay-with-balance")
async def pay_with_balance(request: Request, ctx: RequestContext = Depends(get_request_context)):
    user_id = _require_user(ctx)
    body = await _read_json(request)
    if body.get("total") is None:
        raise ValidationError("total is required")
    result = await payment_service.pay_with_balance(
        user_id, _cart_lines(body), body["total"], promo_code=body.get("promo_code") or body.get("promoCode")
    )
    return {
        "success": True,
        "order_id": result.order_id,
        "new_balance": _money(result.new_balance),
        "dispatch": _dispatch_dict(result.dispatch),
    }


@app.post("/orders/pending")
async def create_pending_order(request: Request, ctx: RequestContext = Depends(get_request_context)):
    """Order to be settled by an external invoice (plus an optional balance part)"""
    user_id = _require_user(ctx)
    body = await _read_json(request)
    if body.get("items"):
        result = payment_service.create_pending_order(
            user_id,
            _cart_lines(body),
            body.get("total"),
            payment_id=body.get("payment_id"),
            balance_to_use=body.get("balance_to_use") or 0,
            promo_code=body.get("promo_code"),
        )
        return {
            "order_id": result["order_id"],
            "total": _money(result["total"]),
            "amount_due": _money(result["amount_due"]),
            "new_balance": _money(result["new_balance"]),
        }
    if body.get("amount") in (None, ""):
        raise ValidationError("items or amount is required")
    order_id = payment_service.create_deposit_order(user_id, body.get("amount"), body.get("payment_id"))
    return {"order_id": order_id, "amount_due": _money(MonetaryDecimal.clamp(body.get("amount")))}


@app.post("/orders/{order_id}/cancel")
async def cancel_pending_order(order_id: int, ctx: RequestContext = Depends(get_request_context)):
    """Abandon an unpaid invoice order; the balance part goes back to the buyer"""
    owner = None if ctx.is_admin else _require_user(ctx)
    result = payment_service.cancel_pending_order(order_id, user_id=owner)
    return {"order_id": order_id, "status": result["status"], "refunded": _money(result["refunded"])}


@app.post("/orders/{order_id}/payment-id")
async def attach_payment_id(order_id: int, request: Request, ctx: RequestContext = Depends(get_request_context)):
    require_admin(ctx)
    body = await _read_json(request)
    payment_id = body.get("payment_id")
    if not payment_id:
        raise ValidationError("payment_id is required")
    payment_service.attach_payment_id(order_id, str(payment_id))
    return {"order_id": order_id, "payment_id": str(payment_id)}


@app.post("/webhook/cryptobot")
async def cryptobot_webhook(request: Request):
    """
    CryptoBot invoice callback. The signature covers the raw body; only
    invoice_paid updates are acted on. The invoice payload carries
    {userId, orderId, amountRub, items}; the balance part was debited with the order.
    """
    if not Config.CRYPTOBOT_API_TOKEN:
        logger.error("❌ CRYPTOBOT_API_TOKEN not configured")
        return JSONResponse(content={"error": "Configuration error"}, status_code=500)

    raw_body = await request.body()
    signature = request.headers.get("crypto-pay-api-signature")
    if not verify_cryptobot_signature(Config.CRYPTOBOT_API_TOKEN, raw_body, signature):
        logger.warning("🚨 SECURITY: Invalid CryptoBot webhook signature")
        return JSONResponse(content={"error": "Forbidden"}, status_code=403)

    try:
        update = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Webhook body must be valid JSON")

    if update.get("update_type") != "invoice_paid":
        return {"status": "ignored"}

    invoice = update.get("payload") or {}
    try:
        payload = json.loads(invoice.get("payload") or "{}")
    except (TypeError, json.JSONDecodeError):
        raise ValidationError("Invoice payload must be JSON")

    user_id = _int_field(payload, "userId")
    if not payload.get("amountRub") or invoice.get("invoice_id") is None:
        raise ValidationError("Missing payment data")

    items = payload.get("items")
    result = await payment_service.handle_payment_confirmed(
        payment_id=str(invoice["invoice_id"]),
        user_id=user_id,
        amount=payload["amountRub"],
        order_id=_int_field(payload, "orderId", required=False),
        is_deposit=not (isinstance(items, list) and items),
    )
    logger.info(f"💳 CRYPTOBOT_WEBHOOK: invoice {invoice['invoice_id']} -> {result.status}")
    return {
        "status": result.status,
        "order_id": result.order_id,
        "dispatch": _dispatch_dict(result.dispatch),
    }


@app.get("/balance")
async def get_balance(ctx: RequestContext = Depends(get_request_context)):
    user_id = _require_user(ctx)
    return {"user_id": user_id, "balance": _money(BalanceLedgerService.get_balance(user_id))}


@app.post("/promos/validate")
async def validate_promo(request: Request, ctx: RequestContext = Depends(get_request_context)):
    body = await _read_json(request)
    return PromoCodeService.validate(body.get("code"), ctx.user_id).to_dict()


# ----------------------------------------------------------------------------
# Leased resources
# ----------------------------------------------------------------------------

@app.get("/leases")
async def list_leases(kind: Optional[str] = None, ctx: RequestContext = Depends(get_request_context)):
    user_id = _require_user(ctx)
    try:
        lease_kind = LeaseKind(kind) if kind else None
    except ValueError:
        raise ValidationError(f"Unknown lease kind: {kind}")
    return {"leases": lease_monitor.list_leased_resources(user_id, lease_kind)}


@app.post("/leases/{lease_id}/cancel")
async def cancel_lease(lease_id: int, ctx: RequestContext = Depends(get_request_context)):
    if not ctx.is_admin:
        _require_user(ctx)
    result = await lease_monitor.cancel(lease_id, ctx)
    return {
        "success": True,
        "lease_id": lease_id,
        "refunded": _money(result["refunded"]),
        "new_balance": _money(result["new_balance"]),
    }


@app.post("/leases/{lease_id}/ready")
async def mark_lease_ready(lease_id: int, ctx: RequestContext = Depends(get_request_context)):
    if not ctx.is_admin:
        _require_user(ctx)
    status = await lease_monitor.mark_ready(lease_id, ctx)
    return {"lease_id": lease_id, "status": status.value}


@app.post("/leases/{lease_id}/retry")
async def retry_lease(lease_id: int, ctx: RequestContext = Depends(get_request_context)):
    if not ctx.is_admin:
        _require_user(ctx)
    status = await lease_monitor.request_retry(lease_id, ctx)
    return {"lease_id": lease_id, "status": status.value}


@app.post("/leases/{lease_id}/complete")
async def complete_lease(lease_id: int, ctx: RequestContext = Depends(get_request_context)):
    if not ctx.is_admin:
        _require_user(ctx)
    status = await lease_monitor.complete(lease_id, ctx)
    return {"lease_id": lease_id, "status": status.value}


@app.post("/leases/{lease_id}/poll")
async def poll_lease(lease_id: int, ctx: RequestContext = Depends(get_request_context)):
    require_admin(ctx)
    status = await lease_monitor.poll_lease(lease_id)
    return {"lease_id": lease_id, "status": status.value}


@app.post("/sms/purchase")
async def purchase_number(request: Request, ctx: RequestContext = Depends(get_request_context)):
    user_id = _require_user(ctx)
    body = await _read_json(request)
    if not body.get("service") or body.get("country") in (None, ""):
        raise ValidationError("service and country are required")
    result = await lease_monitor.purchase_number(
        user_id,
        service=body["service"],
        country=body["country"],
        expected_price=body.get("price"),
        service_name=body.get("service_name"),
        country_name=body.get("country_name"),
    )
    return {
        "success": True,
        "lease_id": result["lease_id"],
        "activation_id": result["activation_id"],
        "phone_number": result["phone_number"],
        "new_balance": _money(result["new_balance"]),
    }


@app.post("/boosts")
async def place_boost_order(request: Request, ctx: RequestContext = Depends(get_request_context)):
    user_id = _require_user(ctx)
    body = await _read_json(request)
    if body.get("service_id") in (None, ""):
        raise ValidationError("service_id is required")
    result = await lease_monitor.place_boost_order(
        user_id,
        service_id=body["service_id"],
        link=body.get("link"),
        quantity=_int_field(body, "quantity"),
        expected_rate=body.get("rate"),
        service_name=body.get("service_name"),
        category=body.get("category"),
    )
    return {
        "success": True,
        "lease_id": result["lease_id"],
        "order_ref": result["order_ref"],
        "price": _money(result["price"]),
        "new_balance": _money(result["new_balance"]),
    }


# ----------------------------------------------------------------------------
# Provider catalogs
# ----------------------------------------------------------------------------

@app.get("/catalog/proxies")
async def proxy_availability(version: Optional[int] = None):
    proxy_adapter = dispatcher.adapters[FulfillmentKind.PROXY]
    return {"availability": await proxy_adapter.client.get_availability(version)}


@app.get("/catalog/sms/prices")
async def sms_prices(service: Optional[str] = None, country: Optional[str] = None):
    return {"prices": await lease_monitor.tiger_sms.get_prices(service, country)}


@app.get("/catalog/boosts")
async def boost_services():
    services = await lease_monitor.profi_like.get_services(Config.PROFI_LIKE_EXCLUDED_CATEGORIES)
    return {"services": services}


# ----------------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------------

@app.post("/admin/users/{user_id}/balance")
async def admin_adjust_balance(user_id: int, request: Request, ctx: RequestContext = Depends(get_request_context)):
    body = await _read_json(request)
    if body.get("amount") is None:
        raise ValidationError("amount is required")
    result = admin_service.adjust_balance(ctx, user_id, body.get("mode", "set"), body["amount"])
    return {"user_id": user_id, "balance": _money(result["balance"]), "change": _money(result["change"])}


@app.post("/admin/users/{user_id}/deliver")
async def admin_deliver_product(user_id: int, request: Request, ctx: RequestContext = Depends(get_request_context)):
    body = await _read_json(request)
    return await admin_service.deliver_product(
        ctx, user_id, _int_field(body, "product_id"), _int_field(body, "quantity", required=False) or 1
    )


@app.post("/admin/products/{product_id}/stock")
async def admin_add_stock(product_id: int, request: Request, ctx: RequestContext = Depends(get_request_context)):
    body = await _read_json(request)
    contents = body.get("contents")
    if isinstance(contents, str):
        contents = contents.splitlines()
    if not isinstance(contents, list):
        raise ValidationError("contents must be a list of strings")
    added = admin_service.add_stock(ctx, product_id, contents, body.get("file_urls"))
    return {"product_id": product_id, "added": added}


@app.delete("/admin/inventory/{item_id}")
async def admin_delete_item(item_id: int, ctx: RequestContext = Depends(get_request_context)):
    deleted = admin_service.delete_inventory_item(ctx, item_id)
    return {"item_id": item_id, "deleted": deleted}


@app.post("/admin/orders/{order_id}/complete")
async def admin_complete_order(order_id: int, request: Request, ctx: RequestContext = Depends(get_request_context)):
    body = await _read_json(request)
    return await admin_service.complete_manual_order(ctx, order_id, body.get("note"))
