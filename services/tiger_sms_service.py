"""Tiger SMS activation API client (handler_api.php protocol)"""

import asyncio
import json
import aiohttp
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from config import Config
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import OutOfStockError, TigerSmsAPIError

logger = logging.getLogger(__name__)

# Provider error codes returned as bare strings
ERROR_MESSAGES = {
    "NO_NUMBERS": "No numbers available for this service and country",
    "NO_BALANCE": "The supplier is restocking this item. Try again later",
    "BAD_SERVICE": "Unknown service",
    "BAD_KEY": "Service temporarily unavailable. Try again later",
    "ERROR_SQL": "Service temporarily unavailable. Try again later",
    "NO_ACTIVATION": "Could not create the activation",
    "BAD_STATUS": "Invalid activation status",
    "BAD_ACTION": "Invalid request",
}


class ActivationStatusCode(Enum):
    """setStatus codes"""
    READY = 1
    RETRY = 3
    COMPLETE = 6
    CANCEL = 8


class RemoteActivationState(Enum):
    """Normalized getStatus answers"""
    WAITING = "waiting"
    WAIT_RESEND = "wait_resend"
    CODE_RECEIVED = "code_received"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass
class NumberActivation:
    activation_id: str
    phone_number: str


@dataclass
class ActivationStatus:
    state: RemoteActivationState
    code: Optional[str] = None
    raw: str = ""


class TigerSmsService:
    """Client for the Tiger SMS handler API; every call answers a plain-text token"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else Config.TIGER_SMS_API_KEY
        self.base_url = base_url or Config.TIGER_SMS_BASE_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.PROVIDER_TIMEOUT_SECONDS)

        if not self.api_key:
            logger.warning("TIGER_SMS_API_KEY not configured - number purchases will fail")

    async def _request(self, action: str, **params: Any) -> str:
        """Single GET, no retry; returns the stripped response body"""
        if not self.api_key:
            raise TigerSmsAPIError("TIGER_SMS_API_KEY not configured", "BAD_KEY")

        query = {"api_key": self.api_key, "action": action}
        query.update({k: str(v) for k, v in params.items() if v is not None})
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.base_url, params=query) as response:
                    return (await response.text()).strip()
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ TIGER_SMS_TIMEOUT: {action}")
            raise TigerSmsAPIError(f"{action} timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ TIGER_SMS_NETWORK_ERROR: {action}: {e}")
            raise TigerSmsAPIError(f"{action} network error: {e}") from e

    @staticmethod
    def _raise_for_token(action: str, result: str):
        message = ERROR_MESSAGES.get(result, f"Error: {result}")
        logger.error(f"❌ TIGER_SMS_API_ERROR: {action}: {result}")
        raise TigerSmsAPIError(message, result)

    async def get_balance(self) -> Decimal:
        result = await self._request("getBalance")
        if result.startswith("ACCESS_BALANCE:"):
            return Decimal(result.split(":", 1)[1])
        self._raise_for_token("getBalance", result)

    async def get_prices(self, service: Optional[str] = None, country: Optional[str] = None) -> Dict[str, Any]:
        result = await self._request("getPrices", service=service, country=country)
        try:
            return json.loads(result)
        except ValueError:
            self._raise_for_token("getPrices", result)

    async def quote_price(self, service: str, country: Any) -> Decimal:
        """
        Retail price of one number. getPrices answers
        {country: {service: {cost, count}}}; the cost is rounded up to a whole ruble.
        """
        country = str(country)
        prices = await self.get_prices(service, country)
        entry = (prices.get(country) or {}).get(service) if isinstance(prices, dict) else None
        if not entry or not entry.get("count") or entry.get("cost") in (None, ""):
            raise OutOfStockError(f"{service} numbers ({country})")
        return MonetaryDecimal.ceil_whole(entry["cost"])

    async def get_number(self, service: str, country: str) -> NumberActivation:
        """ACCESS_NUMBER:$id:$number"""
        result = await self._request("getNumber", service=service, country=country)
        if result.startswith("ACCESS_NUMBER:"):
            parts = result.split(":")
            if len(parts) >= 3:
                logger.info(f"📱 TIGER_SMS_NUMBER: activation {parts[1]} for {service}/{country}")
                return NumberActivation(activation_id=parts[1], phone_number=parts[2])
        self._raise_for_token("getNumber", result)

    async def get_status(self, activation_id: str) -> ActivationStatus:
        result = await self._request("getStatus", id=activation_id)
        if result.startswith("STATUS_OK:"):
            return ActivationStatus(RemoteActivationState.CODE_RECEIVED, result.split(":", 1)[1], result)
        if result == "STATUS_WAIT_CODE":
            return ActivationStatus(RemoteActivationState.WAITING, raw=result)
        if result.startswith("STATUS_WAIT_RESEND") or result.startswith("STATUS_WAIT_RETRY"):
            return ActivationStatus(RemoteActivationState.WAIT_RESEND, raw=result)
        if result == "STATUS_CANCEL":
            return ActivationStatus(RemoteActivationState.CANCELLED, raw=result)
        if result in ERROR_MESSAGES:
            self._raise_for_token("getStatus", result)
        logger.warning(f"⚠️ TIGER_SMS_STATUS_UNKNOWN: activation {activation_id}: {result}")
        return ActivationStatus(RemoteActivationState.UNKNOWN, raw=result)

    async def set_status(self, activation_id: str, status: ActivationStatusCode) -> str:
        """Successful answers start with ACCESS_"""
        result = await self._request("setStatus", id=activation_id, status=status.value)
        if not result.startswith("ACCESS_"):
            self._raise_for_token("setStatus", result)
        logger.info(f"📱 TIGER_SMS_SET_STATUS: activation {activation_id} -> {status.name}: {result}")
        return result
