"""Lazada Open Platform adapter."""

import hashlib
import hmac
import json as jsonlib
import logging
import time
from datetime import datetime, timezone

from ..errors import AuthError, RateLimitedError, RejectedError
from ..utils import parse_datetime, safe_float, safe_int
from .base import ChannelAdapter, ChannelOrder, ChannelOrderItem, ChannelProduct, ListingRef, PushResult

log = logging.getLogger(__name__)

_AUTH_CODES = {"IllegalAccessToken", "MissingAccessToken", "IncompleteSignature", "InvalidApiKey"}


def lazada_signature(secret: str, path: str, params: dict) -> str:
    """Uppercase HMAC-SHA256 of path + sorted key/value pairs."""
    joined = "".join(f"{k}{params[k]}" for k in sorted(params))
    return hmac.new(secret.encode(), f"{path}{joined}".encode(), hashlib.sha256).hexdigest().upper()


class LazadaAdapter(ChannelAdapter):
    """Every request carries app_key/timestamp/access_token and a sign param."""

    code = "LAZADA"
    BASE_URL = "https://api.lazada.com/rest"
    STATUS_MAP = {
        "unpaid": "PENDING",
        "pending": "PENDING",
        "ready_to_ship": "CONFIRMED",
        "packed": "PROCESSING",
        "shipped": "SHIPPED",
        "delivered": "DELIVERED",
        "canceled": "CANCELLED",
        "returned": "REFUNDED",
    }
    RATE_LIMITS = {"read": (10, 1.0), "write": (4, 1.0)}

    def _sign(self, method, path, params, body):
        params.update(
            {
                "app_key": str(self.credentials.get("app_key", "")),
                "timestamp": str(int(time.time() * 1000)),
                "sign_method": "sha256",
                "access_token": self.credentials.get("access_token", ""),
            }
        )
        params["sign"] = lazada_signature(str(self.credentials.get("app_secret", "")), path, params)
        return {"Content-Type": "application/json"}, params

    def _check_body(self, data, path):
        code = str(data.get("code", "0"))
        if code == "0":
            return
        msg = data.get("message") or code
        if code in _AUTH_CODES:
            raise AuthError(f"{path}: {msg}", channel=self.code)
        raise RejectedError(f"{path}: {msg}", channel=self.code)

    # ── Products ──

    async def list_products(self) -> list[ChannelProduct]:
        products = []
        for page in range(self.max_pages):
            data = await self._request(
                "GET",
                "/products/get",
                params={"filter": "live", "offset": page * self.page_size, "limit": self.page_size},
            )
            rows = (data.get("data") or {}).get("products") or []
            for item in rows:
                name = (item.get("attributes") or {}).get("name") or ""
                for sku in item.get("skus") or []:
                    products.append(
                        ChannelProduct(
                            external_id=str(item.get("item_id")),
                            variant_id=str(sku.get("SkuId")) if sku.get("SkuId") else None,
                            sku=sku.get("SellerSku") or None,
                            name=name,
                            stock=safe_int(sku.get("quantity")),
                            price=safe_float(sku.get("price")),
                            status=sku.get("Status"),
                            raw=item,
                        )
                    )
            if len(rows) < self.page_size:
                break
        return products

    async def push_stock(self, listing: ListingRef, quantity: int) -> PushResult:
        payload = {
            "Request": {
                "item_id": listing.external_product_id,
                "skus": [{"sku_id": listing.external_variant_id, "quantity": quantity}],
            }
        }
        data = await self._request(
            "POST",
            "/product/price_quantity/update",
            params={"payload": jsonlib.dumps(payload, separators=(",", ":"))},
        )
        return PushResult(external_id=listing.external_product_id, quantity=quantity, raw=data)

    # ── Orders ──

    async def fetch_orders(
        self, since: datetime, until: datetime | None = None, resume=None
    ) -> list[ChannelOrder]:
        until = until or datetime.now(timezone.utc)
        self.resume_token = None
        first = int(resume or 0)
        orders: list[ChannelOrder] = []
        for page in range(first, first + self.max_pages):
            try:
                rows = await self._order_rows(since, until, page)
                items_by_order = await self._fetch_items([o.get("order_id") for o in rows]) if rows else {}
            except RateLimitedError as e:
                self._pause(e, page, page - first)
                break
            orders.extend(self._parse_order(raw, items_by_order.get(str(raw.get("order_id")), [])) for raw in rows)
            if len(rows) < self.page_size:
                break
        else:
            self.resume_token = first + self.max_pages
        return orders

    async def _order_rows(self, since: datetime, until: datetime, page: int) -> list[dict]:
        data = await self._request(
            "GET",
            "/orders/get",
            params={
                "update_after": since.isoformat(timespec="seconds"),
                "update_before": until.isoformat(timespec="seconds"),
                "sort_by": "updated_at",
                "offset": page * self.page_size,
                "limit": self.page_size,
            },
        )
        return (data.get("data") or {}).get("orders") or []

    async def _fetch_items(self, order_ids: list) -> dict[str, list[dict]]:
        result: dict[str, list[dict]] = {}
        for start in range(0, len(order_ids), self.page_size):
            chunk = [safe_int(i) for i in order_ids[start:start + self.page_size]]
            data = await self._request(
                "GET", "/orders/items/get", params={"order_ids": jsonlib.dumps(chunk)}
            )
            for entry in data.get("data") or []:
                result[str(entry.get("order_id"))] = entry.get("order_items") or []
        return result

    def _parse_order(self, raw: dict, raw_items: list[dict]) -> ChannelOrder:
        # Lazada returns one line per unit; fold them per SKU.
        folded: dict[str, ChannelOrderItem] = {}
        for i in raw_items:
            key = str(i.get("sku_id") or i.get("sku"))
            if key in folded:
                folded[key].quantity += 1
                continue
            folded[key] = ChannelOrderItem(
                external_product_id=str(i["product_id"]) if i.get("product_id") else None,
                external_variant_id=str(i["sku_id"]) if i.get("sku_id") else None,
                sku=i.get("sku") or None,
                name=i.get("name") or "",
                quantity=1,
                unit_price=safe_float(i.get("item_price")) or 0.0,
            )
        statuses = raw.get("statuses") or [""]
        address = raw.get("address_shipping") or {}
        return ChannelOrder(
            external_id=str(raw.get("order_id") or raw.get("order_number")),
            status=str(statuses[0]),
            total_amount=safe_float(raw.get("price")) or 0.0,
            shipping_cost=safe_float(raw.get("shipping_fee")) or 0.0,
            currency=raw.get("currency"),
            ordered_at=parse_datetime(raw.get("created_at")),
            customer={
                "name": " ".join(
                    p for p in (raw.get("customer_first_name"), raw.get("customer_last_name")) if p
                ),
                "email": raw.get("customer_email"),
            },
            shipping_address={
                "name": f"{address.get('first_name', '')} {address.get('last_name', '')}".strip(),
                "phone": address.get("phone"),
                "address": address.get("address1"),
            },
            items=list(folded.values()),
            raw=raw,
        )

    async def update_order_status(self, order_ref: str, status: str) -> dict:
        if status == "SHIPPED":
            data = await self._request("POST", "/order/fulfill", params={"order_id": order_ref})
        elif status == "CANCELLED":
            data = await self._request(
                "POST", "/order/cancel", params={"order_id": order_ref, "reason_id": "15"}
            )
        else:
            raise RejectedError(f"status {status} cannot be pushed to Lazada", channel=self.code)
        return data.get("data") or {}

    async def test_connection(self) -> dict:
        data = await self._request("GET", "/seller/get")
        seller = data.get("data") or {}
        return {"shop_name": seller.get("name"), "seller_id": seller.get("seller_id")}
