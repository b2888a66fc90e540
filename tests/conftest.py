"""
Shared Test Fixtures for the Storefront Fulfillment Engine

Key Components:
1. File-backed SQLite database configured before any project import
2. Per-test schema creation and teardown
3. Factories for users, products and inventory
4. Mocked provider clients and delivery notifier
"""

import os
import tempfile

# The engine is built at import time; point it at a throwaway database first
_TEST_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ["ENABLE_LEASE_MONITOR"] = "false"
os.environ["BOT_TOKEN"] = ""
os.environ["WEBAPP_URL"] = ""
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["CRYPTOBOT_API_TOKEN"] = "test-cryptobot-token"
for _provider_key in ("PX6_API_KEY", "TIGER_SMS_API_KEY", "PROFI_LIKE_API_KEY"):
    os.environ[_provider_key] = ""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest

from database import SessionLocal, create_tables, drop_tables
from models import FulfillmentKind, InventoryItem, Product, User, UserRole
from services.balance_ledger_service import BalanceLedgerService
from services.fulfillment_adapters import build_adapter_registry
from services.profi_like_service import ProfiLikeService
from services.px6_service import Px6Service
from services.tiger_sms_service import TigerSmsService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest.fixture(autouse=True)
def database():
    """Fresh schema for every test"""
    drop_tables()
    create_tables()
    yield
    drop_tables()


@pytest.fixture
def make_user():
    """Create a user; an opening balance is funded through the ledger so invariants hold"""

    def _make_user(
        balance: Any = 0,
        role: UserRole = UserRole.USER,
        telegram_id: Optional[int] = None,
        username: Optional[str] = None,
        is_banned: bool = False,
    ) -> int:
        session = SessionLocal()
        try:
            user = User(
                telegram_id=telegram_id,
                username=username,
                role=role.value,
                is_banned=is_banned,
                balance=Decimal("0"),
            )
            session.add(user)
            session.commit()
            user_id = user.id
        finally:
            session.close()
        if Decimal(str(balance)) > 0:
            BalanceLedgerService.deposit(user_id, balance, description="Opening balance")
        return user_id

    return _make_user


@pytest.fixture
def make_product():
    """Create a product, optionally with local stock"""

    def _make_product(
        name: str = "VPN Key",
        kind: FulfillmentKind = FulfillmentKind.LOCAL_ITEM,
        price: Any = "10.00",
        stock: Sequence[str] = (),
        max_per_user: int = 0,
        provider_options: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> int:
        session = SessionLocal()
        try:
            product = Product(
                name=name,
                fulfillment_kind=kind.value,
                price=Decimal(str(price)),
                max_per_user=max_per_user,
                provider_options=provider_options,
                is_active=is_active,
            )
            session.add(product)
            session.flush()
            for content in stock:
                session.add(InventoryItem(product_id=product.id, content=content))
            session.commit()
            return product.id
        finally:
            session.close()

    return _make_product


@pytest.fixture
def notifier():
    mock_notifier = MagicMock()
    mock_notifier.notify = AsyncMock(return_value=True)
    return mock_notifier


@pytest.fixture
def tiger_sms():
    return AsyncMock(spec=TigerSmsService)


@pytest.fixture
def profi_like():
    return AsyncMock(spec=ProfiLikeService)


@pytest.fixture
def px6():
    return AsyncMock(spec=Px6Service)


@pytest.fixture
def adapters(px6, tiger_sms, profi_like):
    return build_adapter_registry(px6=px6, tiger_sms=tiger_sms, profi_like=profi_like)
