"""px6 proxy reseller API client"""

import asyncio
import aiohttp
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from config import Config
from utils.exception_handler import Px6APIError

logger = logging.getLogger(__name__)

# px6 proxy versions
VERSION_LABELS = {
    6: "IPv6",
    4: "IPv4",
    3: "IPv4 Shared",
}


@dataclass
class ProxyGrant:
    """One purchased proxy"""
    id: str
    host: str
    port: str
    user: str
    password: str
    type: str
    country: str
    date: Optional[str] = None
    date_end: Optional[str] = None

    @property
    def expires_at(self) -> Optional[datetime]:
        if not self.date_end:
            return None
        try:
            return datetime.strptime(self.date_end, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            logger.warning(f"⚠️ PX6: unparseable date_end {self.date_end!r} for proxy {self.id}")
            return None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "type": self.type,
            "country": self.country,
            "date_end": self.date_end,
        }


def format_proxies(grants: List[ProxyGrant], version: int, country: Optional[str] = None) -> str:
    """Human-readable credentials block, one section per proxy"""
    version_label = VERSION_LABELS.get(version, VERSION_LABELS[3])
    sections = []
    for index, grant in enumerate(grants, start=1):
        sections.append("\n".join([
            f"🌐 Proxy #{index}",
            f"IP: {grant.host}:{grant.port}",
            f"Login: {grant.user}",
            f"Password: {grant.password}",
            f"Type: {version_label} ({grant.type})",
            f"Country: {(grant.country or country or '-').upper()}",
            f"Active until: {grant.date_end}",
        ]))
    return "\n\n".join(sections)


class Px6Service:
    """Client for https://px6.link/api/{api_key}/{method}"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else Config.PX6_API_KEY
        self.base_url = (base_url or Config.PX6_BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.PROVIDER_TIMEOUT_SECONDS)

        if not self.api_key:
            logger.warning("PX6_API_KEY not configured - proxy purchases will fail")

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Single GET, no retry. Raises Px6APIError on transport errors and status != yes."""
        if not self.api_key:
            raise Px6APIError("PX6_API_KEY is not configured")

        url = f"{self.base_url}/{self.api_key}/{method}"
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params=query) as response:
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ PX6_TIMEOUT: {method}")
            raise Px6APIError(f"{method} timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ PX6_NETWORK_ERROR: {method}: {e}")
            raise Px6APIError(f"{method} network error: {e}") from e
        except ValueError as e:
            raise Px6APIError(f"{method} returned a non-JSON response") from e

        if not isinstance(data, dict) or data.get("status") != "yes":
            error = data.get("error_id") or data.get("error") if isinstance(data, dict) else data
            logger.error(f"❌ PX6_API_ERROR: {method}: {data}")
            raise Px6APIError(f"{method} failed: {error}")
        return data

    async def get_countries(self, version: Optional[int] = None) -> List[str]:
        data = await self._request("getcountry", {"version": version or Config.PX6_DEFAULT_VERSION})
        return list(data.get("list") or [])

    async def get_count(self, country: str, version: Optional[int] = None) -> int:
        data = await self._request(
            "getcount", {"country": country, "version": version or Config.PX6_DEFAULT_VERSION}
        )
        try:
            return int(data.get("count") or 0)
        except (TypeError, ValueError):
            return 0

    async def get_availability(self, version: Optional[int] = None) -> Dict[str, int]:
        """Stock count per country; a failed per-country lookup counts as 0"""
        countries = await self.get_countries(version)

        async def _count(country: str) -> int:
            try:
                return await self.get_count(country, version)
            except Px6APIError as e:
                logger.warning(f"⚠️ PX6: getcount failed for {country}: {e}")
                return 0

        counts = await asyncio.gather(*(_count(c) for c in countries))
        return dict(zip(countries, counts))

    async def buy(
        self,
        country: str,
        count: int = 1,
        period: Optional[int] = None,
        version: Optional[int] = None,
        protocol: str = "http",
    ) -> List[ProxyGrant]:
        """Purchase proxies; returns one grant per purchased proxy"""
        if not country:
            raise Px6APIError("country is required")

        params = {
            "count": count,
            "period": period or Config.PX6_DEFAULT_PERIOD_DAYS,
            "country": country,
            "version": version or Config.PX6_DEFAULT_VERSION,
            "type": "socks" if protocol == "socks" else "http",
        }
        logger.info(
            f"🌐 PX6_BUY: {count} x v{params['version']} {country} for {params['period']} days"
        )
        data = await self._request("buy", params)

        raw_list = data.get("list") or {}
        entries = raw_list.values() if isinstance(raw_list, dict) else raw_list
        grants = [
            ProxyGrant(
                id=str(p.get("id")),
                host=str(p.get("host") or p.get("ip") or ""),
                port=str(p.get("port") or ""),
                user=str(p.get("user") or ""),
                password=str(p.get("pass") or ""),
                type=str(p.get("type") or params["type"]),
                country=str(p.get("country") or country),
                date=p.get("date"),
                date_end=p.get("date_end"),
            )
            for p in entries
        ]
        if not grants:
            raise Px6APIError("buy returned no proxies")

        logger.info(f"✅ PX6_BUY: purchased {len(grants)} proxies")
        return grants
