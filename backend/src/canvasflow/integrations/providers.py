"""
Provider Registry - immutable catalog of supported external systems

Providers are defined at deploy time and never mutated. The registry wraps a
read-only mapping of provider id to Provider and is injected wherever the
catalog is needed, so tests can substitute their own table.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Type

from .credentials import (
    AccessTokenCredentials,
    ApiKeyCredentials,
    CarrierAccountCredentials,
    ConsumerKeyCredentials,
    LogoCredentials,
    MagentoCredentials,
    MerchantLoginCredentials,
    NetsisCredentials,
    OAuthClientCredentials,
    ProviderCredentials,
    RefreshTokenCredentials,
    ShopifyCredentials,
    SupplierApiCredentials,
)


class ProviderCategory(str, Enum):
    MARKETPLACE = "marketplace"
    ERP = "erp"
    ACCOUNTING = "accounting"
    CARRIER = "carrier"
    STOREFRONT = "storefront"


class SyncOperation(str, Enum):
    """A unit of sync work. Transient, never persisted on its own."""

    IMPORT_PRODUCTS = "import_products"
    EXPORT_ORDERS = "export_orders"
    SYNC_INVENTORY = "sync_inventory"
    SYNC_PRICING = "sync_pricing"
    FETCH_ORDERS = "fetch_orders"

    @property
    def key_field(self) -> str:
        """Field holding the stable external key of this operation's records."""
        if self in (SyncOperation.EXPORT_ORDERS, SyncOperation.FETCH_ORDERS):
            return "order_id"
        return "sku"


@dataclass(frozen=True)
class Provider:
    """
    Catalog entry for an external system.

    Attributes:
        id: Stable provider id (e.g. 'trendyol')
        category: Provider category
        name: Display name
        supported_operations: Operations a connection to this provider may run
        credential_model: Credential variant the provider requires
        allows_multiple: Whether a user may hold several active connections
        base_url: Default API root for the HTTP client
        endpoints: Path per operation, relative to base_url
        health_endpoint: Path requested by connection tests
    """

    id: str
    category: ProviderCategory
    name: str
    supported_operations: frozenset
    credential_model: Type[ProviderCredentials]
    allows_multiple: bool = False
    base_url: Optional[str] = None
    endpoints: Mapping[SyncOperation, str] = field(default_factory=dict)
    health_endpoint: str = "/"
    description: str = ""
    website: str = ""

    @property
    def required_credentials(self) -> Tuple[str, ...]:
        return tuple(self.credential_model.required_field_names())

    def supports(self, operation: SyncOperation) -> bool:
        return operation in self.supported_operations

    def endpoint_for(self, operation: SyncOperation) -> str:
        try:
            return self.endpoints[operation]
        except KeyError:
            raise ValueError(
                f"Provider '{self.id}' has no endpoint for operation '{operation.value}'"
            )


class ProviderRegistry:
    """
    Read-only lookup over a provider table.

    Iteration order is catalog order. Lookups return None for unknown ids;
    callers decide whether that is an error.
    """

    def __init__(self, providers: Iterable[Provider]):
        table: Dict[str, Provider] = {}
        for provider in providers:
            if provider.id in table:
                raise ValueError(f"Duplicate provider id: '{provider.id}'")
            table[provider.id] = provider
        self._providers = MappingProxyType(table)

    def get_provider_by_id(self, provider_id: str) -> Optional[Provider]:
        return self._providers.get(provider_id)

    def get_providers_by_category(self, category) -> List[Provider]:
        category = ProviderCategory(category)
        return [p for p in self._providers.values() if p.category == category]

    def get_providers_by_operation(self, operation) -> List[Provider]:
        operation = SyncOperation(operation)
        return [p for p in self._providers.values() if p.supports(operation)]

    def list_all_providers(self) -> List[Provider]:
        return list(self._providers.values())

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)


_ORDER_OPS = frozenset({SyncOperation.FETCH_ORDERS, SyncOperation.EXPORT_ORDERS})
_CATALOG_OPS = frozenset({
    SyncOperation.IMPORT_PRODUCTS,
    SyncOperation.SYNC_INVENTORY,
    SyncOperation.SYNC_PRICING,
})

_MARKETPLACE_ENDPOINTS = {
    SyncOperation.IMPORT_PRODUCTS: "/products",
    SyncOperation.SYNC_INVENTORY: "/inventory",
    SyncOperation.SYNC_PRICING: "/prices",
    SyncOperation.FETCH_ORDERS: "/orders",
    SyncOperation.EXPORT_ORDERS: "/orders",
}


DEFAULT_PROVIDERS: Tuple[Provider, ...] = (
    # Marketplaces
    Provider(
        id="trendyol",
        category=ProviderCategory.MARKETPLACE,
        name="Trendyol",
        supported_operations=_CATALOG_OPS | {SyncOperation.FETCH_ORDERS},
        credential_model=SupplierApiCredentials,
        base_url="https://api.trendyol.com/sapigw",
        endpoints=_MARKETPLACE_ENDPOINTS,
        health_endpoint="/suppliers/addresses",
        description="Turkey's largest e-commerce marketplace",
        website="https://partner.trendyol.com",
    ),
    Provider(
        id="hepsiburada",
        category=ProviderCategory.MARKETPLACE,
        name="Hepsiburada",
        supported_operations=_CATALOG_OPS | {SyncOperation.FETCH_ORDERS},
        credential_model=MerchantLoginCredentials,
        base_url="https://mpop.hepsiburada.com",
        endpoints=_MARKETPLACE_ENDPOINTS,
        health_endpoint="/merchants/status",
        description="Turkish e-commerce marketplace",
        website="https://merchant.hepsiburada.com",
    ),
    Provider(
        id="n11",
        category=ProviderCategory.MARKETPLACE,
        name="N11",
        supported_operations=_CATALOG_OPS | {SyncOperation.FETCH_ORDERS},
        credential_model=ApiKeyCredentials,
        base_url="https://api.n11.com/rest",
        endpoints=_MARKETPLACE_ENDPOINTS,
        description="Turkish online marketplace",
        website="https://so.n11.com",
    ),
    Provider(
        id="amazon_tr",
        category=ProviderCategory.MARKETPLACE,
        name="Amazon Turkey",
        supported_operations=_CATALOG_OPS | {SyncOperation.FETCH_ORDERS},
        credential_model=RefreshTokenCredentials,
        allows_multiple=True,
        base_url="https://sellingpartnerapi-eu.amazon.com",
        endpoints=_MARKETPLACE_ENDPOINTS,
        description="Amazon Seller Central Turkey",
        website="https://sellercentral.amazon.com.tr",
    ),
    # Accounting
    Provider(
        id="parasut",
        category=ProviderCategory.ACCOUNTING,
        name="Parasut",
        supported_operations=frozenset({
            SyncOperation.IMPORT_PRODUCTS,
            SyncOperation.EXPORT_ORDERS,
        }),
        credential_model=OAuthClientCredentials,
        base_url="https://api.parasut.com/v4",
        endpoints={
            SyncOperation.IMPORT_PRODUCTS: "/products",
            SyncOperation.EXPORT_ORDERS: "/sales_invoices",
        },
        health_endpoint="/me",
        description="Cloud accounting for Turkish SMEs",
        website="https://www.parasut.com",
    ),
    # ERP
    Provider(
        id="logo",
        category=ProviderCategory.ERP,
        name="Logo",
        supported_operations=_CATALOG_OPS | {SyncOperation.EXPORT_ORDERS},
        credential_model=LogoCredentials,
        endpoints={
            SyncOperation.IMPORT_PRODUCTS: "/api/v1/items",
            SyncOperation.SYNC_INVENTORY: "/api/v1/stocks",
            SyncOperation.SYNC_PRICING: "/api/v1/prices",
            SyncOperation.EXPORT_ORDERS: "/api/v1/salesOrders",
        },
        description="Logo Tiger / Go ERP",
        website="https://www.logo.com.tr",
    ),
    Provider(
        id="netsis",
        category=ProviderCategory.ERP,
        name="Netsis",
        supported_operations=_CATALOG_OPS | {SyncOperation.EXPORT_ORDERS},
        credential_model=NetsisCredentials,
        endpoints={
            SyncOperation.IMPORT_PRODUCTS: "/api/v2/items",
            SyncOperation.SYNC_INVENTORY: "/api/v2/stocks",
            SyncOperation.SYNC_PRICING: "/api/v2/prices",
            SyncOperation.EXPORT_ORDERS: "/api/v2/orders",
        },
        description="Logo Netsis ERP",
        website="https://www.logo.com.tr/netsis",
    ),
    # Carriers
    Provider(
        id="yurtici_kargo",
        category=ProviderCategory.CARRIER,
        name="Yurtici Kargo",
        supported_operations=_ORDER_OPS,
        credential_model=CarrierAccountCredentials,
        base_url="https://api.yurticikargo.com",
        endpoints={
            SyncOperation.FETCH_ORDERS: "/shipments",
            SyncOperation.EXPORT_ORDERS: "/shipments",
        },
        website="https://www.yurticikargo.com",
    ),
    Provider(
        id="aras_kargo",
        category=ProviderCategory.CARRIER,
        name="Aras Kargo",
        supported_operations=_ORDER_OPS,
        credential_model=CarrierAccountCredentials,
        base_url="https://customerservices.araskargo.com.tr",
        endpoints={
            SyncOperation.FETCH_ORDERS: "/shipments",
            SyncOperation.EXPORT_ORDERS: "/shipments",
        },
        website="https://www.araskargo.com.tr",
    ),
    Provider(
        id="dhl",
        category=ProviderCategory.CARRIER,
        name="DHL Express",
        supported_operations=_ORDER_OPS,
        credential_model=ApiKeyCredentials,
        allows_multiple=True,
        base_url="https://express.api.dhl.com/mydhlapi",
        endpoints={
            SyncOperation.FETCH_ORDERS: "/shipments",
            SyncOperation.EXPORT_ORDERS: "/shipments",
        },
        website="https://www.dhl.com",
    ),
    # Storefronts
    Provider(
        id="shopify",
        category=ProviderCategory.STOREFRONT,
        name="Shopify",
        supported_operations=_CATALOG_OPS | {SyncOperation.FETCH_ORDERS},
        credential_model=ShopifyCredentials,
        allows_multiple=True,
        endpoints={
            SyncOperation.IMPORT_PRODUCTS: "/products.json",
            SyncOperation.SYNC_INVENTORY: "/inventory_levels.json",
            SyncOperation.SYNC_PRICING: "/variants.json",
            SyncOperation.FETCH_ORDERS: "/orders.json",
        },
        health_endpoint="/shop.json",
        website="https://www.shopify.com",
    ),
    Provider(
        id="woocommerce",
        category=ProviderCategory.STOREFRONT,
        name="WooCommerce",
        supported_operations=_CATALOG_OPS | {SyncOperation.FETCH_ORDERS},
        credential_model=ConsumerKeyCredentials,
        allows_multiple=True,
        endpoints={
            SyncOperation.IMPORT_PRODUCTS: "/products",
            SyncOperation.SYNC_INVENTORY: "/products/stock",
            SyncOperation.SYNC_PRICING: "/products/prices",
            SyncOperation.FETCH_ORDERS: "/orders",
        },
        health_endpoint="/system_status",
        website="https://woocommerce.com",
    ),
    Provider(
        id="magento",
        category=ProviderCategory.STOREFRONT,
        name="Magento",
        supported_operations=_CATALOG_OPS | {SyncOperation.FETCH_ORDERS},
        credential_model=MagentoCredentials,
        allows_multiple=True,
        endpoints={
            SyncOperation.IMPORT_PRODUCTS: "/products",
            SyncOperation.SYNC_INVENTORY: "/stockItems",
            SyncOperation.SYNC_PRICING: "/products/base-prices",
            SyncOperation.FETCH_ORDERS: "/orders",
        },
        health_endpoint="/store/storeConfigs",
        website="https://business.adobe.com/products/magento",
    ),
    Provider(
        id="shop-x",
        category=ProviderCategory.STOREFRONT,
        name="Shop-X",
        supported_operations=_CATALOG_OPS | _ORDER_OPS,
        credential_model=AccessTokenCredentials,
        base_url="https://api.shop-x.example/v1",
        endpoints=_MARKETPLACE_ENDPOINTS,
        health_endpoint="/ping",
        description="Reference storefront",
    ),
)


@lru_cache()
def get_provider_registry() -> ProviderRegistry:
    """Process-wide registry over DEFAULT_PROVIDERS (FastAPI dependency)."""
    return ProviderRegistry(DEFAULT_PROVIDERS)
