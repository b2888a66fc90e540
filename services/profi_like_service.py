"""profi-like social engagement (SMM panel) API client"""

import asyncio
import json
import aiohttp
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from config import Config
from models import LeaseStatus
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ProfiLikeAPIError, ValidationError

logger = logging.getLogger(__name__)

# Panel status strings -> boost lease states
STATUS_MAP = {
    "Pending": LeaseStatus.PROCESSING,
    "Processing": LeaseStatus.PROCESSING,
    "In progress": LeaseStatus.IN_PROGRESS,
    "Completed": LeaseStatus.COMPLETED,
    "Partial": LeaseStatus.PARTIAL,
    "Canceled": LeaseStatus.CANCELLED,
    "Cancelled": LeaseStatus.CANCELLED,
}


def boost_price(rate: Any, quantity: int) -> Decimal:
    """Panel rates are per 1000 units; the price is rounded up to the cent"""
    return MonetaryDecimal.ceil_cents(MonetaryDecimal.to_decimal(rate) * quantity / 1000)


@dataclass
class BoostStatus:
    order_ref: str
    status: Optional[LeaseStatus]
    raw_status: Optional[str] = None
    start_count: Optional[int] = None
    remains: Optional[int] = None
    error: Optional[str] = None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _parse_status(order_ref: str, data: Dict[str, Any]) -> BoostStatus:
    if data.get("error"):
        return BoostStatus(order_ref, None, error=str(data["error"]))
    raw = data.get("status")
    status = STATUS_MAP.get(raw)
    if status is None:
        logger.warning(f"⚠️ PROFI_LIKE_STATUS_UNKNOWN: order {order_ref}: {raw!r}")
    return BoostStatus(
        order_ref=order_ref,
        status=status,
        raw_status=raw,
        start_count=_to_int(data.get("start_count")),
        remains=_to_int(data.get("remains")),
    )


class ProfiLikeService:
    """Client for the profi-like form-encoded POST API"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else Config.PROFI_LIKE_API_KEY
        self.base_url = base_url or Config.PROFI_LIKE_BASE_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.PROVIDER_TIMEOUT_SECONDS)

        if not self.api_key:
            logger.warning("PROFI_LIKE_API_KEY not configured - boost orders will fail")

    async def _request(self, action: str, **params: Any) -> Any:
        """Single POST, no retry; returns decoded JSON or raises ProfiLikeAPIError"""
        if not self.api_key:
            raise ProfiLikeAPIError("PROFI_LIKE_API_KEY not configured")

        form = {"key": self.api_key, "action": action}
        form.update({k: str(v) for k, v in params.items() if v is not None})
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.base_url, data=form) as response:
                    text = await response.text()
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ PROFI_LIKE_TIMEOUT: {action}")
            raise ProfiLikeAPIError(f"{action} timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ PROFI_LIKE_NETWORK_ERROR: {action}: {e}")
            raise ProfiLikeAPIError(f"{action} network error: {e}") from e

        try:
            data = json.loads(text)
        except ValueError:
            raise ProfiLikeAPIError(text.strip() or f"{action} returned an empty response")

        if isinstance(data, dict) and data.get("error") and action != "status":
            logger.error(f"❌ PROFI_LIKE_API_ERROR: {action}: {data['error']}")
            raise ProfiLikeAPIError(str(data["error"]))
        return data

    async def get_services(self, excluded_categories: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        excluded = set(Config.PROFI_LIKE_EXCLUDED_CATEGORIES if excluded_categories is None else excluded_categories)
        data = await self._request("services")
        if not isinstance(data, list):
            raise ProfiLikeAPIError("services returned an unexpected payload")
        return [s for s in data if s.get("category") not in excluded]

    async def get_service(self, service_id: Any) -> Dict[str, Any]:
        """Catalog entry for one service: rate per 1000 units, min, max, name, category"""
        for entry in await self.get_services():
            if str(entry.get("service")) == str(service_id):
                return entry
        raise ValidationError(f"Boost service {service_id} is not available")

    async def get_balance(self) -> Dict[str, Any]:
        return await self._request("balance", currency=Config.PROFI_LIKE_CURRENCY)

    async def add_order(self, service_id: Any, link: str, quantity: int) -> str:
        """Place a boost order; returns the panel order id"""
        data = await self._request(
            "add",
            service=service_id,
            link=link,
            quantity=quantity,
            currency=Config.PROFI_LIKE_CURRENCY,
        )
        order_ref = data.get("order") if isinstance(data, dict) else None
        if not order_ref:
            raise ProfiLikeAPIError("Could not create the boost order")
        logger.info(f"🚀 PROFI_LIKE_ORDER: {order_ref} service {service_id} x{quantity}")
        return str(order_ref)

    async def get_status(self, order_ref: str) -> BoostStatus:
        data = await self._request("status", order=order_ref)
        if not isinstance(data, dict):
            raise ProfiLikeAPIError("status returned an unexpected payload")
        if data.get("error"):
            raise ProfiLikeAPIError(str(data["error"]))
        return _parse_status(order_ref, data)

    async def get_statuses(self, order_refs: List[str]) -> Dict[str, BoostStatus]:
        """Multi-status call; per-order errors are reported on the entry, not raised"""
        if not order_refs:
            return {}
        data = await self._request("status", orders=",".join(order_refs))
        if not isinstance(data, dict):
            raise ProfiLikeAPIError("status returned an unexpected payload")
        if data.get("error") and not isinstance(data.get("error"), dict):
            raise ProfiLikeAPIError(str(data["error"]))
        return {
            str(ref): _parse_status(str(ref), entry)
            for ref, entry in data.items()
            if isinstance(entry, dict)
        }
