"""Credential variants, one validated shape per provider family.

Each provider in the catalog names the model its credentials must satisfy,
so a connection's credential payload is a tagged union keyed by provider id.
Variants know how to authenticate their own HTTP requests.
"""

import base64
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


def _basic_auth(user: str, secret: str) -> Dict[str, str]:
    token = base64.b64encode(f"{user}:{secret}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


class ProviderCredentials(BaseModel):
    """Base for all credential variants."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)

    @classmethod
    def field_names(cls) -> List[str]:
        return list(cls.model_fields.keys())

    @classmethod
    def required_field_names(cls) -> List[str]:
        return [name for name, info in cls.model_fields.items() if info.is_required()]

    def auth_headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def resolve_base_url(self, default: Optional[str]) -> Optional[str]:
        """Per-store base URL for variants that carry one; catalog default otherwise."""
        return default


class ApiKeyCredentials(ProviderCredentials):
    api_key: str = Field(min_length=1)
    api_secret: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return _basic_auth(self.api_key, self.api_secret)


class SupplierApiCredentials(ApiKeyCredentials):
    supplier_id: str = Field(min_length=1)


class MerchantLoginCredentials(ProviderCredentials):
    merchant_id: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return _basic_auth(self.username, self.password)


class RefreshTokenCredentials(ProviderCredentials):
    seller_id: str = Field(min_length=1)
    marketplace_id: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.refresh_token}"}


class OAuthClientCredentials(ProviderCredentials):
    company_id: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        headers = _basic_auth(self.client_id, self.client_secret)
        headers["X-Company-Id"] = self.company_id
        return headers


class ErpServerCredentials(ProviderCredentials):
    host: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return _basic_auth(self.username, self.password)

    def resolve_base_url(self, default: Optional[str]) -> Optional[str]:
        host = self.host.rstrip("/")
        if host.startswith(("http://", "https://")):
            return host
        return f"https://{host}"


class LogoCredentials(ErpServerCredentials):
    firm_number: str = Field(min_length=1)
    period: str = Field(min_length=1)


class NetsisCredentials(ErpServerCredentials):
    database: str = Field(min_length=1)


class CarrierAccountCredentials(ProviderCredentials):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    customer_code: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return _basic_auth(self.username, self.password)


class AccessTokenCredentials(ProviderCredentials):
    access_token: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class ShopifyCredentials(AccessTokenCredentials):
    shop_name: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return {"X-Shopify-Access-Token": self.access_token}

    def resolve_base_url(self, default: Optional[str]) -> Optional[str]:
        return f"https://{self.shop_name}.myshopify.com/admin/api/2024-01"


class MagentoCredentials(AccessTokenCredentials):
    base_url: str = Field(min_length=1)

    def resolve_base_url(self, default: Optional[str]) -> Optional[str]:
        return f"{self.base_url.rstrip('/')}/rest/V1"


class ConsumerKeyCredentials(ProviderCredentials):
    site_url: str = Field(min_length=1)
    consumer_key: str = Field(min_length=1)
    consumer_secret: str = Field(min_length=1)

    def auth_headers(self) -> Dict[str, str]:
        return _basic_auth(self.consumer_key, self.consumer_secret)

    def resolve_base_url(self, default: Optional[str]) -> Optional[str]:
        return f"{self.site_url.rstrip('/')}/wp-json/wc/v3"


def validate_credentials(
    provider_id: str,
    model: type,
    payload: Optional[Dict[str, Any]],
) -> ProviderCredentials:
    """Validate a raw credential payload against the provider's variant.

    Raises:
        ValidationError: with ``missing_fields`` / ``invalid_fields`` details
    """
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError(
            "Credentials must be an object",
            details={"provider_id": provider_id},
        )

    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        missing: List[str] = []
        invalid: List[str] = []
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            if error["type"] in ("missing", "string_too_short"):
                missing.append(field)
            else:
                invalid.append(field)

        details: Dict[str, Any] = {"provider_id": provider_id}
        if missing:
            details["missing_fields"] = sorted(missing)
        if invalid:
            details["invalid_fields"] = sorted(invalid)

        raise ValidationError(
            f"Invalid credentials for provider '{provider_id}'",
            details=details,
        ) from e
