"""Tokopedia Fulfillment Service adapter."""

import logging
from datetime import datetime, timezone

from ..errors import AuthError, RateLimitedError, RejectedError
from ..utils import from_epoch, parse_datetime, safe_float, safe_int
from .base import ChannelAdapter, ChannelOrder, ChannelOrderItem, ChannelProduct, ListingRef, PushResult

log = logging.getLogger(__name__)


class TokopediaAdapter(ChannelAdapter):
    """Bearer token + X-Tkpd-Client-Id; every path is scoped by the fs_id."""

    code = "TOKOPEDIA"
    BASE_URL = "https://fs.tokopedia.net"
    STATUS_MAP = {
        "new": "PENDING",
        "confirmed": "CONFIRMED",
        "processed": "PROCESSING",
        "sent": "SHIPPED",
        "delivered": "DELIVERED",
        "cancelled": "CANCELLED",
        "refunded": "REFUNDED",
    }
    RATE_LIMITS = {"read": (20, 1.0), "write": (10, 1.0)}

    @property
    def fs_id(self) -> str:
        return str(self.credentials.get("fs_id", ""))

    def _sign(self, method, path, params, body):
        headers = {
            "Authorization": f"Bearer {self.credentials.get('access_token', '')}",
            "Content-Type": "application/json",
            "X-Tkpd-Client-Id": str(self.credentials.get("client_id", "")),
        }
        return headers, params

    def _check_body(self, data, path):
        header = data.get("header") or {}
        code = str(header.get("error_code", "0") or "0")
        if code == "0":
            return
        reason = header.get("reason") or header.get("messages") or f"error_code {code}"
        if code in ("401", "403"):
            raise AuthError(f"{path}: {reason}", channel=self.code)
        raise RejectedError(f"{path}: {reason}", channel=self.code)

    # ── Products ──

    async def list_products(self) -> list[ChannelProduct]:
        products = []
        for page in range(1, self.max_pages + 1):
            data = await self._request(
                "GET",
                f"/inventory/v1/fs/{self.fs_id}/product",
                params={"page": page, "per_page": self.page_size, "sort": "create_time", "order": "desc"},
            )
            rows = data.get("data") or []
            for p in rows:
                basic = p.get("basic") or {}
                products.append(
                    ChannelProduct(
                        external_id=str(basic.get("productID") or p.get("product_id")),
                        sku=(p.get("other") or {}).get("sku") or p.get("sku") or None,
                        name=basic.get("name") or p.get("name") or "",
                        stock=safe_int((p.get("stock") or {}).get("value")),
                        price=safe_float((p.get("price") or {}).get("value")),
                        status=str(basic.get("status")) if basic.get("status") is not None else None,
                        raw=p,
                    )
                )
            if len(rows) < self.page_size:
                break
        return products

    async def push_stock(self, listing: ListingRef, quantity: int) -> PushResult:
        data = await self._request(
            "POST",
            f"/inventory/v1/fs/{self.fs_id}/stock/update",
            params={"shop_id": self.account.shop_id},
            json=[{"product_id": safe_int(listing.external_product_id), "new_stock": quantity}],
        )
        body = data.get("data") or {}
        if safe_int(body.get("failed_rows")):
            failed = (body.get("failed_rows_data") or [{}])[0]
            raise RejectedError(
                f"stock/update: {failed.get('message') or 'row rejected'}", channel=self.code
            )
        return PushResult(external_id=listing.external_product_id, quantity=quantity, raw=body)

    # ── Orders ──

    async def fetch_orders(
        self, since: datetime, until: datetime | None = None, resume=None
    ) -> list[ChannelOrder]:
        until = until or datetime.now(timezone.utc)
        self.resume_token = None
        first = int(resume or 1)
        orders = []
        for page in range(first, first + self.max_pages):
            try:
                data = await self._request(
                    "GET",
                    "/v2/order/list",
                    params={
                        "fs_id": self.fs_id,
                        "shop_id": self.account.shop_id,
                        "from_date": since.strftime("%Y-%m-%d"),
                        "to_date": until.strftime("%Y-%m-%d"),
                        "page": page,
                        "per_page": self.page_size,
                    },
                )
            except RateLimitedError as e:
                self._pause(e, page, page - first)
                break
            rows = data.get("data") or []
            orders.extend(self._parse_order(raw) for raw in rows)
            if len(rows) < self.page_size:
                break
        else:
            self.resume_token = first + self.max_pages
        return orders

    def _parse_order(self, raw: dict) -> ChannelOrder:
        amt = raw.get("amt") or {}
        recipient = raw.get("recipient") or {}
        buyer = raw.get("buyer") or {}
        items = [
            ChannelOrderItem(
                external_product_id=str(p["id"]) if p.get("id") else None,
                sku=p.get("sku") or None,
                name=p.get("name") or "",
                quantity=safe_int(p.get("quantity")) or 1,
                unit_price=safe_float(p.get("price")) or 0.0,
            )
            for p in raw.get("products") or []
        ]
        created = raw.get("create_time")
        ordered_at = from_epoch(created) if isinstance(created, (int, float)) else parse_datetime(created)
        return ChannelOrder(
            external_id=str(raw.get("order_id") or raw.get("invoice_number")),
            status=str(raw.get("order_status") or ""),
            total_amount=safe_float(amt.get("total") or amt.get("ttl_amount")) or 0.0,
            shipping_cost=safe_float(amt.get("shipping_cost")) or 0.0,
            currency="IDR",
            ordered_at=ordered_at,
            customer={"name": buyer.get("name"), "email": buyer.get("email")},
            shipping_address={
                "name": recipient.get("name"),
                "phone": recipient.get("phone"),
                "address": (recipient.get("address") or {}).get("address_full"),
            },
            items=items,
            raw=raw,
        )

    async def update_order_status(self, order_ref: str, status: str) -> dict:
        endpoints = {
            "CONFIRMED": "ack",
            "SHIPPED": "shipping",
            "CANCELLED": "reject",
        }
        action = endpoints.get(status)
        if not action:
            raise RejectedError(f"status {status} cannot be pushed to Tokopedia", channel=self.code)
        data = await self._request(
            "POST", f"/v1/fs/{self.fs_id}/order/{action}", json={"order_id": order_ref}
        )
        return data.get("data") or {}

    async def test_connection(self) -> dict:
        data = await self._request("GET", f"/v1/shop/fs/{self.fs_id}/shop-info")
        info = data.get("data") or {}
        if isinstance(info, list):
            info = info[0] if info else {}
        return {"shop_name": info.get("shop_name"), "shop_id": info.get("shop_id")}
