from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis

from fastapi import Depends, FastAPI, Request
from fastapi import Form
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from .config import (
    ADMIN_PASSWORD, ADMIN_USERNAME, DATABASE_URL, LOG_LEVEL,
    ORDER_LOCK_TTL_SECONDS, PAY_TIMEOUT, REDIS_URL, REFUND_MODE,
    RESTOCK_BACKEND, SESSION_SECRET,
)
from .errors import InsufficientStock, InvalidState, ShopError, Unauthorized
from .helpers import ct_equal, now_ts
from .infra.sql import make_async_engine
from .mockpay import MockPay, PaymentAdapter
from .model import bulk, catalog, inventory, ledger, restock
from .model.db import Base, ORDER_PAID, ORDER_PENDING
from .model.fulfillment import complete_order
from .model.settlement import (
    RefundSettlement, new_settlement, reject_refund, request_refund,
)
from .schemas import (
    CardIdsIn, CardImportIn, CategoryIn, CheckoutIn, ConfirmRefundIn,
    CustomerOrderIn, OrderIdsIn, OrderLookupIn, ProductIn, ProductUpdate,
    RefundRequestIn, RejectRefundIn, ok,
)

log = logging.getLogger(__name__)

engine, SessionAsync = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session

adapter: PaymentAdapter = MockPay()

app = FastAPI(
    title="cardshop",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


def get_settlement() -> RefundSettlement:
    settlement = getattr(app.state, "settlement", None)
    if settlement is None:
        settlement = new_settlement(http=getattr(app.state, "http", None))
        app.state.settlement = settlement
    return settlement


async def get_restock_store(db: AsyncSession = Depends(get_db)):
    yield restock.new_store(db=db, r=getattr(app.state, "redis", None))


def current_user(request: Request) -> Optional[Dict[str, Any]]:
    # set by the storefront login; only id, username and image are read
    return request.session.get("user")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("cardshop is starting up (refund mode: %s, restock backend: %s)",
             REFUND_MODE, RESTOCK_BACKEND)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=PAY_TIMEOUT,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )
    app.state.settlement = new_settlement(http=app.state.http)


@app.on_event("startup")
async def _redis_start():
    if RESTOCK_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


# ----------------------------
# Errors -> uniform result
# ----------------------------
@app.exception_handler(ShopError)
async def _shop_error(request: Request, exc: ShopError):
    return ORJSONResponse(
        {"success": False, "message": exc.message, "data": exc.data},
        status_code=exc.status_code,
    )


@app.exception_handler(HTTPException)
async def _http_error(request: Request, exc: HTTPException):
    return ORJSONResponse(
        {"success": False, "message": str(exc.detail), "data": None},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _request_invalid(request: Request, exc: RequestValidationError):
    fields = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        fields[".".join(loc) or "body"] = err.get("msg", "invalid")
    return ORJSONResponse(
        {"success": False, "message": "invalid input",
         "data": {"fields": fields}},
        status_code=422,
    )


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    if request.session.get("admin_user"):
        return True
    # password fallback for scripted clients
    pw = request.headers.get("x-admin-password")
    return bool(pw) and ct_equal(pw, ADMIN_PASSWORD)


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise Unauthorized("admin login required")


# ----------------------------
# Storefront: catalog
# ----------------------------
@app.get("/api/products")
async def api_products(
    category_id: Optional[str] = None,
    featured: bool = False,
    q: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    items = await catalog.list_active_products(
        db, category_id=category_id, featured=featured, search=q,
        limit=limit, offset=offset,
    )
    return {"items": items, "limit": limit, "offset": offset}


@app.get("/api/products/{slug}")
async def api_product(
    slug: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    store=Depends(get_restock_store),
):
    product = await catalog.get_product_by_slug(db, slug)
    if product["stock"] == 0:
        product["restock"] = await store.summary(product["id"])
        product["requested_by_me"] = bool(
            request.session.get(restock.flag_key(product["id"]))
        )
    return product


@app.get("/api/categories")
async def api_categories(db: AsyncSession = Depends(get_db)):
    return {"items": await catalog.list_categories(db)}


@app.get("/api/categories/{slug}")
async def api_category(slug: str, limit: int = 50, offset: int = 0,
                       db: AsyncSession = Depends(get_db)):
    return await catalog.get_category_by_slug(db, slug, limit=limit,
                                              offset=offset)


@app.post("/api/products/{product_id}/restock")
async def api_request_restock(
    product_id: str,
    request: Request,
    user: Optional[Dict[str, Any]] = Depends(current_user),
    db: AsyncSession = Depends(get_db),
    store=Depends(get_restock_store),
):
    res = await restock.request_restock(db, store, product_id, user)
    request.session[restock.flag_key(product_id)] = True
    msg = "restock requested" if res["created"] else "already requested"
    return ok(msg, res["summary"])


# ----------------------------
# Storefront: orders
# ----------------------------
@app.post("/api/checkout")
async def api_checkout(payload: CheckoutIn,
                       db: AsyncSession = Depends(get_db)):
    order = await ledger.create_order(
        db, payload.product_id, payload.quantity, payload.email,
        payment_method=payload.payment_method,
        lock_ttl_seconds=ORDER_LOCK_TTL_SECONDS,
    )
    return ok("order created", order)


@app.post("/api/orders/lookup")
async def api_order_lookup(payload: OrderLookupIn,
                           db: AsyncSession = Depends(get_db)):
    return ok("", await ledger.find_order(db, payload.order_no, payload.email))


@app.post("/api/orders/{order_no}/cancel")
async def api_order_cancel(order_no: str, payload: CustomerOrderIn,
                           db: AsyncSession = Depends(get_db)):
    order = await ledger.find_order(db, order_no, payload.email)
    if order["status"] != ORDER_PENDING:
        raise InvalidState(f"order {order['order_no']} is {order['status']} "
                           f"and cannot be cancelled")
    order = await ledger.cancel_order(db, order["id"], "cancelled by customer")
    return ok("order cancelled", order)


@app.post("/api/orders/{order_no}/refund")
async def api_order_refund(order_no: str, payload: RefundRequestIn,
                           db: AsyncSession = Depends(get_db)):
    order = await request_refund(db, order_no, payload.email, payload.reason)
    return ok("refund requested", order)


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)  # succeeded | failed | canceled
    order_no, trade_no = adapter.event_ids(event)
    if not order_no:
        raise ShopError("missing order_no")

    order = await ledger.get_order_by_no(db, order_no)

    if kind == "succeeded":
        if not trade_no:
            raise ShopError("missing trade_no")
        order = await ledger.mark_paid(db, order["id"], trade_no)
        if order["status"] != ORDER_PAID:
            # replay of an event already fully handled
            return {"ok": True, "idempotent": True,
                    "order_status": order["status"]}
        try:
            order = await complete_order(db, order["id"])
        except InsufficientStock as e:
            # paid but undeliverable; stays paid for manual handling
            log.warning("order %s paid but not fulfilled: %s",
                        order["order_no"], e.message)
        return {"ok": True, "order_status": order["status"]}

    if kind in ("failed", "canceled"):
        if order["status"] == ORDER_PENDING:
            order = await ledger.cancel_order(db, order["id"],
                                              f"payment {kind}")
        return {"ok": True, "order_status": order["status"]}

    raise ShopError("unknown event type")


# ----------------------------
# Admin login
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        request.session["admin_login_at"] = now_ts()
        return ok("logged in")
    return ORJSONResponse(
        {"success": False, "message": "Invalid credentials.", "data": None},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return ok("logged out")


# ----------------------------
# Admin: catalog
# ----------------------------
@app.get("/api/admin/products", dependencies=[Depends(require_admin)])
async def api_admin_products(q: Optional[str] = None, limit: int = 50,
                             offset: int = 0,
                             db: AsyncSession = Depends(get_db)):
    items = await catalog.list_all_products(db, search=q, limit=limit,
                                            offset=offset)
    return {"items": items, "limit": limit, "offset": offset}


@app.post("/api/admin/products", dependencies=[Depends(require_admin)])
async def api_admin_create_product(payload: ProductIn,
                                   db: AsyncSession = Depends(get_db)):
    return ok("product created", await catalog.create_product(db, payload))


@app.put("/api/admin/products/{product_id}",
         dependencies=[Depends(require_admin)])
async def api_admin_update_product(product_id: str, payload: ProductUpdate,
                                   db: AsyncSession = Depends(get_db)):
    product = await catalog.update_product(db, product_id, payload)
    return ok("product updated", product)


@app.delete("/api/admin/products/{product_id}",
            dependencies=[Depends(require_admin)])
async def api_admin_delete_product(product_id: str,
                                   db: AsyncSession = Depends(get_db)):
    await catalog.delete_product(db, product_id)
    return ok("product deleted", {"id": product_id})


@app.post("/api/admin/products/{product_id}/toggle",
          dependencies=[Depends(require_admin)])
async def api_admin_toggle_product(product_id: str,
                                   db: AsyncSession = Depends(get_db)):
    res = await catalog.toggle_product_active(db, product_id)
    return ok("product enabled" if res["is_active"] else "product disabled",
              res)


@app.get("/api/admin/categories", dependencies=[Depends(require_admin)])
async def api_admin_categories(db: AsyncSession = Depends(get_db)):
    return {"items": await catalog.list_categories(db)}


@app.post("/api/admin/categories", dependencies=[Depends(require_admin)])
async def api_admin_create_category(payload: CategoryIn,
                                    db: AsyncSession = Depends(get_db)):
    return ok("category created", await catalog.create_category(db, payload))


# ----------------------------
# Admin: cards
# ----------------------------
@app.get("/api/admin/cards", dependencies=[Depends(require_admin)])
async def api_admin_cards(
    product_id: Optional[str] = None,
    q: Optional[str] = None,
    status: Optional[str] = None,
    order_no: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    db: AsyncSession = Depends(get_db),
):
    return await inventory.list_cards(
        db, product_id=product_id, q=q, status=status, order_no=order_no,
        page=page, page_size=page_size,
    )


@app.post("/api/admin/cards/import", dependencies=[Depends(require_admin)])
async def api_admin_import_cards(
    payload: CardImportIn,
    db: AsyncSession = Depends(get_db),
    store=Depends(get_restock_store),
):
    res = await inventory.import_cards(db, payload.product_id, payload.cards,
                                       dedupe=payload.dedupe)
    if res["imported"]:
        res["restock_cleared"] = await store.clear(payload.product_id)
    return ok(f"{res['imported']} cards imported, {res['skipped']} skipped",
              res)


@app.post("/api/admin/cards/delete", dependencies=[Depends(require_admin)])
async def api_admin_delete_cards(payload: CardIdsIn,
                                 db: AsyncSession = Depends(get_db)):
    n = await inventory.delete_cards(db, payload.ids)
    return ok(f"{n} cards deleted", {"deleted": n})


# ----------------------------
# Admin: orders
# ----------------------------
@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def api_admin_orders(
    status: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    db: AsyncSession = Depends(get_db),
):
    return await ledger.list_orders(db, status=status, q=q, page=page,
                                    page_size=page_size)


def _csv_response(rows) -> StreamingResponse:
    return StreamingResponse(
        bulk.iter_csv(rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition":
                 'attachment; filename="orders.csv"'},
    )


@app.get("/api/admin/orders/export", dependencies=[Depends(require_admin)])
async def api_admin_export_filtered(
    status: Optional[str] = None,
    q: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    return _csv_response(await bulk.export_rows(db, status=status, q=q))


@app.post("/api/admin/orders/export", dependencies=[Depends(require_admin)])
async def api_admin_export_selected(payload: OrderIdsIn,
                                    db: AsyncSession = Depends(get_db)):
    return _csv_response(await bulk.export_rows(db, order_ids=payload.ids))


@app.post("/api/admin/orders/bulk-delete",
          dependencies=[Depends(require_admin)])
async def api_admin_bulk_delete(payload: OrderIdsIn,
                                db: AsyncSession = Depends(get_db)):
    res = await bulk.bulk_delete(db, payload.ids)
    return ok(f"{res['deleted']} orders deleted", res)


@app.get("/api/admin/orders/{order_id}",
         dependencies=[Depends(require_admin)])
async def api_admin_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await ledger.get_order(db, order_id)


@app.post("/api/admin/orders/{order_id}/complete",
          dependencies=[Depends(require_admin)])
async def api_admin_complete(order_id: str,
                             db: AsyncSession = Depends(get_db)):
    order = await complete_order(db, order_id, "completed by admin")
    return ok("order completed", order)


@app.post("/api/admin/orders/{order_id}/refund/approve",
          dependencies=[Depends(require_admin)])
async def api_admin_refund_approve(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    settlement: RefundSettlement = Depends(get_settlement),
):
    order = await settlement.approve(db, order_id)
    return ok("refund approved", order)


@app.post("/api/admin/orders/{order_id}/refund/reject",
          dependencies=[Depends(require_admin)])
async def api_admin_refund_reject(
    order_id: str,
    payload: Optional[RejectRefundIn] = None,
    db: AsyncSession = Depends(get_db),
):
    reason = payload.reason if payload is not None else None
    order = await reject_refund(db, order_id, reason)
    return ok("refund rejected", order)


@app.post("/api/admin/orders/{order_id}/refund/client-params",
          dependencies=[Depends(require_admin)])
async def api_admin_refund_params(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    settlement: RefundSettlement = Depends(get_settlement),
):
    return ok("", await settlement.client_params(db, order_id))


@app.post("/api/admin/orders/{order_id}/refund/confirm",
          dependencies=[Depends(require_admin)])
async def api_admin_refund_confirm(
    order_id: str,
    payload: Optional[ConfirmRefundIn] = None,
    db: AsyncSession = Depends(get_db),
    settlement: RefundSettlement = Depends(get_settlement),
):
    note = payload.note if payload is not None else None
    order = await settlement.confirm(db, order_id, note)
    return ok("refund confirmed", order)
