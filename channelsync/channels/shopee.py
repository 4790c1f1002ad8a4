"""Shopee Open Platform v2 adapter."""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone

from ..errors import AuthError, RateLimitedError, RejectedError
from ..utils import from_epoch, safe_float, safe_int
from .base import ChannelAdapter, ChannelOrder, ChannelOrderItem, ChannelProduct, ListingRef, PushResult

log = logging.getLogger(__name__)

# get_order_detail accepts at most 50 order_sn per call
DETAIL_BATCH = 50

_AUTH_ERRORS = {"error_auth", "invalid_access_token", "error_permission"}


class ShopeeAdapter(ChannelAdapter):
    """Signed with HMAC-SHA256 over partner_id + path + timestamp + token + shop_id."""

    code = "SHOPEE"
    BASE_URL = "https://partner.shopeemobile.com"
    STATUS_MAP = {
        "UNPAID": "PENDING",
        "INVOICE_PENDING": "PENDING",
        "READY_TO_SHIP": "CONFIRMED",
        "TO_SHIP": "CONFIRMED",
        "PROCESSED": "PROCESSING",
        "SHIPPED": "SHIPPED",
        "TO_CONFIRM_RECEIVE": "SHIPPED",
        "COMPLETED": "DELIVERED",
        "IN_CANCEL": "CANCELLED",
        "CANCELLED": "CANCELLED",
        "TO_RETURN": "REFUNDED",
    }
    RATE_LIMITS = {"read": (10, 1.0), "write": (5, 1.0)}

    @property
    def shop_id(self) -> str:
        return str(self.account.shop_id or self.credentials.get("shop_id") or "")

    def _sign(self, method, path, params, body):
        partner_id = str(self.credentials.get("partner_id", ""))
        access_token = self.credentials.get("access_token", "")
        timestamp = int(time.time())
        base = f"{partner_id}{path}{timestamp}{access_token}{self.shop_id}"
        sign = hmac.new(
            str(self.credentials.get("partner_key", "")).encode(),
            base.encode(),
            hashlib.sha256,
        ).hexdigest()
        params.update(
            {
                "partner_id": partner_id,
                "shop_id": self.shop_id,
                "access_token": access_token,
                "timestamp": timestamp,
                "sign": sign,
            }
        )
        return {"Content-Type": "application/json"}, params

    def _check_body(self, data, path):
        err = data.get("error")
        if not err:
            return
        msg = data.get("message") or err
        if err in _AUTH_ERRORS:
            raise AuthError(f"{path}: {msg}", channel=self.code)
        raise RejectedError(f"{path}: {msg}", channel=self.code)

    # ── Products ──

    async def list_products(self) -> list[ChannelProduct]:
        item_ids: list[int] = []
        offset = 0
        for _ in range(self.max_pages):
            data = await self._request(
                "GET",
                "/api/v2/product/get_item_list",
                params={"offset": offset, "page_size": self.page_size, "item_status": "NORMAL"},
            )
            resp = data.get("response") or {}
            item_ids.extend(i["item_id"] for i in resp.get("item") or [] if i.get("item_id"))
            if not resp.get("has_next_page"):
                break
            offset = resp.get("next_offset", offset + self.page_size)

        products = []
        for start in range(0, len(item_ids), self.page_size):
            chunk = item_ids[start:start + self.page_size]
            data = await self._request(
                "GET",
                "/api/v2/product/get_item_base_info",
                params={"item_id_list": ",".join(str(i) for i in chunk)},
            )
            for item in (data.get("response") or {}).get("item_list") or []:
                products.append(self._parse_item(item))
        return products

    def _parse_item(self, item: dict) -> ChannelProduct:
        stock = None
        summary = (item.get("stock_info_v2") or {}).get("summary_info") or {}
        if "total_available_stock" in summary:
            stock = safe_int(summary["total_available_stock"])
        elif item.get("stock_info"):
            stock = safe_int(item["stock_info"][0].get("normal_stock"))
        price_info = (item.get("price_info") or [{}])[0]
        return ChannelProduct(
            external_id=str(item.get("item_id")),
            sku=item.get("item_sku") or None,
            name=item.get("item_name") or "",
            stock=stock,
            price=safe_float(price_info.get("current_price")),
            status=item.get("item_status"),
            raw=item,
        )

    async def push_stock(self, listing: ListingRef, quantity: int) -> PushResult:
        data = await self._request(
            "POST",
            "/api/v2/product/update_stock",
            json={
                "item_id": safe_int(listing.external_product_id),
                "stock_list": [
                    {
                        "model_id": safe_int(listing.external_variant_id) or 0,
                        "normal_stock": quantity,
                    }
                ],
            },
        )
        resp = data.get("response") or {}
        failures = resp.get("failure_list") or []
        if failures:
            reason = failures[0].get("failed_reason") or "stock update refused"
            raise RejectedError(f"update_stock: {reason}", channel=self.code)
        return PushResult(external_id=listing.external_product_id, quantity=quantity, raw=resp)

    # ── Orders ──

    async def fetch_orders(
        self, since: datetime, until: datetime | None = None, resume=None
    ) -> list[ChannelOrder]:
        until = until or datetime.now(timezone.utc)
        self.resume_token = None
        orders: list[ChannelOrder] = []
        cursor = resume or ""
        for done in range(self.max_pages):
            try:
                page, cursor_next = await self._order_page(since, until, cursor)
            except RateLimitedError as e:
                self._pause(e, cursor, done)
                break
            orders.extend(page)
            if cursor_next is None:
                break
            cursor = cursor_next
        else:
            self.resume_token = cursor
        return orders

    async def _order_page(self, since: datetime, until: datetime, cursor: str):
        """One get_order_list page plus its details; returns (orders, next cursor or None)."""
        data = await self._request(
            "GET",
            "/api/v2/order/get_order_list",
            params={
                "time_range_field": "update_time",
                "time_from": int(since.timestamp()),
                "time_to": int(until.timestamp()),
                "page_size": self.page_size,
                "cursor": cursor,
            },
        )
        resp = data.get("response") or {}
        order_sns = [o["order_sn"] for o in resp.get("order_list") or [] if o.get("order_sn")]
        next_cursor = (resp.get("next_cursor") or None) if resp.get("more") else None

        orders = []
        for start in range(0, len(order_sns), DETAIL_BATCH):
            data = await self._request(
                "GET",
                "/api/v2/order/get_order_detail",
                params={
                    "order_sn_list": ",".join(order_sns[start:start + DETAIL_BATCH]),
                    "response_optional_fields": "buyer_username,item_list,total_amount,recipient_address,actual_shipping_fee",
                },
            )
            for raw in (data.get("response") or {}).get("order_list") or []:
                orders.append(self._parse_order(raw))
        return orders, next_cursor

    def _parse_order(self, raw: dict) -> ChannelOrder:
        items = [
            ChannelOrderItem(
                external_product_id=str(i.get("item_id")) if i.get("item_id") else None,
                external_variant_id=str(i["model_id"]) if i.get("model_id") else None,
                sku=i.get("model_sku") or i.get("item_sku") or None,
                name=i.get("item_name") or "",
                quantity=safe_int(i.get("model_quantity_purchased")) or 1,
                unit_price=safe_float(i.get("model_discounted_price")) or 0.0,
            )
            for i in raw.get("item_list") or []
        ]
        address = raw.get("recipient_address") or {}
        return ChannelOrder(
            external_id=str(raw.get("order_sn")),
            status=raw.get("order_status") or "",
            total_amount=safe_float(raw.get("total_amount")) or 0.0,
            shipping_cost=safe_float(raw.get("actual_shipping_fee")) or 0.0,
            currency=raw.get("currency"),
            ordered_at=from_epoch(raw.get("create_time")),
            customer={"name": raw.get("buyer_username"), "email": None},
            shipping_address={
                "name": address.get("name"),
                "phone": address.get("phone"),
                "address": address.get("full_address"),
            },
            items=items,
            raw=raw,
        )

    async def update_order_status(self, order_ref: str, status: str) -> dict:
        if status == "SHIPPED":
            data = await self._request("POST", "/api/v2/logistics/ship_order", json={"order_sn": order_ref})
        elif status == "CANCELLED":
            data = await self._request(
                "POST",
                "/api/v2/order/cancel_order",
                json={"order_sn": order_ref, "cancel_reason": "OUT_OF_STOCK"},
            )
        else:
            raise RejectedError(f"status {status} cannot be pushed to Shopee", channel=self.code)
        return data.get("response") or {}

    async def test_connection(self) -> dict:
        data = await self._request("GET", "/api/v2/shop/get_shop_info")
        return {"shop_name": data.get("shop_name"), "region": data.get("region")}
