"""
Provider Adapters
=================

One adapter per fulfillment kind. Each turns an order line (or a direct purchase)
into delivered content, and records a LeasedResource when the provider issues
something that resolves later. Adapters raise ProviderUnavailableError on remote
failure; the dispatcher decides how a failed line is presented.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from config import Config
from models import (
    FulfillmentKind, LeasedResource, LeaseKind, LeaseProvider, LeaseStatus,
)
from services.balance_ledger_service import BalanceLedgerService
from services.delivery_notifier import Attachment
from services.inventory_claim_service import InventoryClaimService
from services.lease_settlement import settle_cancellation
from services.profi_like_service import ProfiLikeService
from services.px6_service import Px6Service, format_proxies
from services.tiger_sms_service import TigerSmsService, ActivationStatusCode
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    InsufficientFundsError, LeaseNotFoundError, LeaseStateError, ValidationError, ProviderUnavailableError,
)
from utils.lease_state_validator import LeaseStateValidator

logger = logging.getLogger(__name__)


@dataclass
class AcquireRequest:
    """What to acquire and for whom"""
    user_id: int
    product_name: str
    unit_price: Decimal
    quantity: int = 1
    options: Dict[str, Any] = field(default_factory=dict)
    order_id: Optional[int] = None
    order_line_id: Optional[int] = None
    product_id: Optional[int] = None
    # Direct purchases pay at acquisition; order lines were paid with the order
    charge_balance: bool = False

    @property
    def line_total(self) -> Decimal:
        return MonetaryDecimal.quantize(self.unit_price * self.quantity)


@dataclass
class AcquireResult:
    synchronous: bool
    payloads: List[str] = field(default_factory=list)
    leased_resource_ids: List[int] = field(default_factory=list)
    delivered_units: int = 0
    shortfall: int = 0
    # Something is still owed to the buyer after this pass (async lease or manual step)
    pending: bool = False
    attachments: List[Attachment] = field(default_factory=list)

    @property
    def payload(self) -> str:
        return Config.DELIVERY_SEPARATOR.join(self.payloads)


class FulfillmentAdapter(ABC):
    """Common contract: acquire units for a request; cancel a lease and report the refund"""

    kind: FulfillmentKind

    @abstractmethod
    async def acquire(self, request: AcquireRequest) -> AcquireResult:
        raise NotImplementedError

    async def cancel(self, lease_id: int) -> Decimal:
        raise LeaseStateError(f"{self.kind.value} resources cannot be cancelled")


def _load_lease(lease_id: int) -> Dict[str, Any]:
    with atomic_transaction() as tx:
        lease = tx.get(LeasedResource, lease_id)
        if not lease:
            raise LeaseNotFoundError(f"Leased resource {lease_id} not found")
        return {
            "id": lease.id,
            "kind": LeaseKind(lease.kind),
            "status": LeaseStatus(lease.status),
            "provider_ref": lease.provider_ref,
            "user_id": lease.user_id,
        }


class LocalItemAdapter(FulfillmentAdapter):
    """Claims one inventory unit per unit of quantity; short stock delivers what exists"""

    kind = FulfillmentKind.LOCAL_ITEM

    async def acquire(self, request: AcquireRequest) -> AcquireResult:
        if request.product_id is None:
            raise ValidationError("Local-item lines need a product id")

        claimed = []
        if request.order_line_id is not None:
            claimed = InventoryClaimService.claimed_for_line(request.order_line_id)
        if len(claimed) < request.quantity:
            claimed += InventoryClaimService.claim_many(
                request.product_id, request.user_id, request.order_id, request.quantity - len(claimed),
                order_line_id=request.order_line_id,
            )
        result = AcquireResult(synchronous=True, delivered_units=len(claimed))
        result.shortfall = request.quantity - len(claimed)

        for item in claimed:
            result.payloads.append(f"📦 {request.product_name}:\n{item.content}")
            if item.file_url:
                result.attachments.append(Attachment(url=item.file_url, caption=request.product_name))

        if result.shortfall:
            logger.warning(
                f"📭 PARTIAL_DELIVERY: order {request.order_id} product {request.product_id} "
                f"delivered {len(claimed)}/{request.quantity}"
            )
            result.payloads.append(
                f"⚠️ {request.product_name}: {len(claimed)} of {request.quantity} delivered, "
                f"the rest is out of stock"
            )
        return result


class ProxyAdapter(FulfillmentAdapter):
    """Synchronous px6 purchase; each proxy is recorded as an ACTIVE grant until date_end"""

    kind = FulfillmentKind.PROXY

    def __init__(self, client: Optional[Px6Service] = None):
        self.client = client or Px6Service()

    async def acquire(self, request: AcquireRequest) -> AcquireResult:
        options = request.options
        country = options.get("country")
        if not country:
            raise ValidationError(f"{request.product_name}: proxy country is required")

        version = int(options.get("version") or Config.PX6_DEFAULT_VERSION)
        period = int(options.get("period") or Config.PX6_DEFAULT_PERIOD_DAYS)
        protocol = "socks" if options.get("protocol", options.get("type")) == "socks" else "http"

        grants = await self.client.buy(
            country=country, count=request.quantity, period=period, version=version, protocol=protocol
        )

        lease_ids = []
        with atomic_transaction() as tx:
            for grant in grants:
                lease = LeasedResource(
                    provider=LeaseProvider.PX6.value,
                    provider_ref=grant.id,
                    user_id=request.user_id,
                    order_id=request.order_id,
                    product_id=request.product_id,
                    kind=LeaseKind.PROXY.value,
                    price=MonetaryDecimal.quantize(request.unit_price),
                    status=LeaseStatus.ACTIVE.value,
                    expires_at=grant.expires_at,
                    payload={**grant.as_payload(), "version": version, "period": period},
                )
                tx.add(lease)
                tx.flush()
                lease_ids.append(lease.id)

        formatted = format_proxies(grants, version, country)
        return AcquireResult(
            synchronous=True,
            payloads=[f"📦 {request.product_name}:\n{formatted}"],
            leased_resource_ids=lease_ids,
            delivered_units=len(grants),
            shortfall=max(0, request.quantity - len(grants)),
        )


class SmsNumberAdapter(FulfillmentAdapter):
    """Rents a phone number; the SMS code arrives later through the lifecycle monitor"""

    kind = FulfillmentKind.SMS_NUMBER

    def __init__(self, client: Optional[TigerSmsService] = None):
        self.client = client or TigerSmsService()

    async def acquire(self, request: AcquireRequest) -> AcquireResult:
        options = request.options
        service = options.get("service")
        country = options.get("country")
        if not service or country in (None, ""):
            raise ValidationError(f"{request.product_name}: service and country are required")

        price = MonetaryDecimal.quantize(request.unit_price)
        service_name = options.get("service_name") or service
        country_name = options.get("country_name") or str(country)

        result = AcquireResult(synchronous=False, pending=True)
        for _ in range(request.quantity):
            if request.charge_balance and price > 0:
                available = BalanceLedgerService.get_balance(request.user_id)
                if available < price:
                    raise InsufficientFundsError(request.user_id, price, available)

            try:
                activation = await self.client.get_number(service, str(country))
            except ProviderUnavailableError as e:
                if not result.delivered_units:
                    raise
                result.shortfall = request.quantity - result.delivered_units
                result.payloads.append(f"⚠️ {request.product_name}: {e.detail}")
                break

            try:
                with atomic_transaction() as tx:
                    lease = LeasedResource(
                        provider=LeaseProvider.TIGER_SMS.value,
                        provider_ref=activation.activation_id,
                        user_id=request.user_id,
                        order_id=request.order_id,
                        product_id=request.product_id,
                        kind=LeaseKind.SMS_NUMBER.value,
                        price=price,
                        status=LeaseStatus.WAITING.value,
                        payload={
                            "phone_number": activation.phone_number,
                            "service": service,
                            "service_name": service_name,
                            "country": str(country),
                            "country_name": country_name,
                            "sms_code": None,
                        },
                    )
                    tx.add(lease)
                    tx.flush()
                    lease_id = lease.id
                    if request.charge_balance and price > 0:
                        BalanceLedgerService.withdraw(
                            request.user_id,
                            price,
                            description=f"Virtual number ({service_name}) - {country_name}",
                            order_id=request.order_id,
                            leased_resource_id=lease_id,
                            session=tx,
                        )
            except InsufficientFundsError:
                # Balance moved between the pre-check and the debit; release the number
                await self._release_quietly(activation.activation_id)
                raise

            result.leased_resource_ids.append(lease_id)
            result.delivered_units += 1
            result.payloads.append(
                f"📱 {request.product_name}: +{activation.phone_number}\n"
                f"Service: {service_name}\n"
                f"Open the app to receive the SMS code."
            )
        return result

    async def _release_quietly(self, activation_id: str):
        try:
            await self.client.set_status(activation_id, ActivationStatusCode.CANCEL)
        except ProviderUnavailableError as e:
            logger.error(f"❌ SMS_RELEASE_FAILED: activation {activation_id}: {e}")

    async def cancel(self, lease_id: int) -> Decimal:
        """Cancel at the provider, then refund exactly once"""
        lease = _load_lease(lease_id)
        cancellable = LeaseStateValidator.cancellable_values(LeaseKind.SMS_NUMBER)
        if lease["status"].value not in cancellable:
            raise LeaseStateError(
                f"Number cannot be cancelled in state {lease['status'].value}"
            )

        await self.client.set_status(lease["provider_ref"], ActivationStatusCode.CANCEL)
        return settle_cancellation(lease_id, cancellable, "Refund for virtual number (cancelled)")


class SocialBoostAdapter(FulfillmentAdapter):
    """Places an engagement order; completion is polled, partial completion is not refunded"""

    kind = FulfillmentKind.SOCIAL_BOOST

    def __init__(self, client: Optional[ProfiLikeService] = None):
        self.client = client or ProfiLikeService()

    async def acquire(self, request: AcquireRequest) -> AcquireResult:
        options = request.options
        service_id = options.get("service_id")
        link = options.get("link")
        boost_quantity = int(options.get("boost_quantity") or request.quantity)
        if not service_id or not link:
            raise ValidationError(f"{request.product_name}: service_id and link are required")

        price = request.line_total
        service_name = options.get("service_name") or f"Service #{service_id}"
        category = options.get("category") or "Unknown"

        if request.charge_balance and price > 0:
            available = BalanceLedgerService.get_balance(request.user_id)
            if available < price:
                raise InsufficientFundsError(request.user_id, price, available)

        order_ref = await self.client.add_order(service_id, link, boost_quantity)

        with atomic_transaction() as tx:
            lease = LeasedResource(
                provider=LeaseProvider.PROFI_LIKE.value,
                provider_ref=order_ref,
                user_id=request.user_id,
                order_id=request.order_id,
                product_id=request.product_id,
                kind=LeaseKind.SOCIAL_BOOST.value,
                price=price,
                status=LeaseStatus.PROCESSING.value,
                payload={
                    "service_id": service_id,
                    "service_name": service_name,
                    "category": category,
                    "link": link,
                    "quantity": boost_quantity,
                    "start_count": None,
                    "remains": None,
                },
            )
            tx.add(lease)
            tx.flush()
            lease_id = lease.id
            if request.charge_balance and price > 0:
                # No provider-side cancel exists; a failed debit leaves the order to the admins
                BalanceLedgerService.withdraw(
                    request.user_id,
                    price,
                    description=f"Boost: {service_name} ({category})",
                    order_id=request.order_id,
                    leased_resource_id=lease_id,
                    session=tx,
                )

        return AcquireResult(
            synchronous=False,
            pending=True,
            leased_resource_ids=[lease_id],
            delivered_units=1,
            payloads=[
                f"🚀 {request.product_name}: boost order #{order_ref} placed\n"
                f"{category} - {service_name}\n"
                f"Quantity: {boost_quantity}\n"
                f"Link: {link}"
            ],
        )


class ManualCreditAdapter(FulfillmentAdapter):
    """Goods credited by an administrator outside the engine (e.g. in-app stars)"""

    kind = FulfillmentKind.MANUAL_CREDIT

    async def acquire(self, request: AcquireRequest) -> AcquireResult:
        logger.info(f"⏳ MANUAL_CREDIT_PENDING: order {request.order_id} {request.product_name} x{request.quantity}")
        return AcquireResult(
            synchronous=False,
            pending=True,
            payloads=[
                f"⏳ {request.product_name} x{request.quantity}: "
                f"will be credited by an administrator shortly"
            ],
        )


def build_adapter_registry(
    px6: Optional[Px6Service] = None,
    tiger_sms: Optional[TigerSmsService] = None,
    profi_like: Optional[ProfiLikeService] = None,
) -> Dict[FulfillmentKind, FulfillmentAdapter]:
    """Closed set of adapters keyed by fulfillment kind"""
    return {
        FulfillmentKind.LOCAL_ITEM: LocalItemAdapter(),
        FulfillmentKind.PROXY: ProxyAdapter(px6),
        FulfillmentKind.SMS_NUMBER: SmsNumberAdapter(tiger_sms),
        FulfillmentKind.SOCIAL_BOOST: SocialBoostAdapter(profi_like),
        FulfillmentKind.MANUAL_CREDIT: ManualCreditAdapter(),
    }
