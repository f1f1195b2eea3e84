"""Unit tests for credential variants and their encryption at rest

Tests cover:
- Required field validation per variant
- Auth headers and base URL resolution
- AES-GCM round trip bound to the provider id
- Tampering and wrong-key detection
"""

import base64
import os

import pytest

from canvasflow.integrations.credentials import (
    AccessTokenCredentials,
    ErpServerCredentials,
    MagentoCredentials,
    OAuthClientCredentials,
    ShopifyCredentials,
    SupplierApiCredentials,
    validate_credentials,
)
from canvasflow.integrations.encryption import CredentialCipher, EncryptionError, IV_LENGTH
from canvasflow.integrations.errors import ValidationError


class TestValidateCredentials:
    """Test validate_credentials()"""

    def test_valid_payload(self):
        """A complete payload returns the typed variant"""
        creds = validate_credentials(
            "trendyol",
            SupplierApiCredentials,
            {"api_key": "k", "api_secret": "s", "supplier_id": "42"},
        )

        assert isinstance(creds, SupplierApiCredentials)
        assert creds.supplier_id == "42"

    def test_missing_fields_are_named(self):
        """Every missing field is reported, sorted"""
        with pytest.raises(ValidationError) as exc_info:
            validate_credentials("trendyol", SupplierApiCredentials, {"api_key": "k"})

        details = exc_info.value.details
        assert details["provider_id"] == "trendyol"
        assert details["missing_fields"] == ["api_secret", "supplier_id"]

    def test_blank_values_count_as_missing(self):
        """Whitespace-only strings are stripped and rejected"""
        with pytest.raises(ValidationError) as exc_info:
            validate_credentials("shop-x", AccessTokenCredentials, {"access_token": "   "})

        assert exc_info.value.details["missing_fields"] == ["access_token"]

    def test_none_payload_reports_all_fields(self):
        """No payload at all means every required field is missing"""
        with pytest.raises(ValidationError) as exc_info:
            validate_credentials("shop-x", AccessTokenCredentials, None)

        assert exc_info.value.details["missing_fields"] == ["access_token"]

    def test_unknown_fields_are_invalid(self):
        """Fields outside the variant are rejected"""
        with pytest.raises(ValidationError) as exc_info:
            validate_credentials(
                "shop-x", AccessTokenCredentials, {"access_token": "t", "password": "x"}
            )

        assert exc_info.value.details["invalid_fields"] == ["password"]

    def test_non_object_payload(self):
        """A list or string is not a credential payload"""
        with pytest.raises(ValidationError, match="must be an object"):
            validate_credentials("shop-x", AccessTokenCredentials, ["access_token"])

    def test_credentials_are_frozen(self):
        """Validated credentials cannot be mutated"""
        creds = AccessTokenCredentials(access_token="t")

        with pytest.raises(Exception):
            creds.access_token = "other"


class TestCredentialTransport:
    """Test how variants authenticate and locate their API"""

    def test_bearer_token(self):
        creds = AccessTokenCredentials(access_token="abc")

        assert creds.auth_headers() == {"Authorization": "Bearer abc"}
        assert creds.resolve_base_url("https://api.example") == "https://api.example"

    def test_basic_auth(self):
        creds = SupplierApiCredentials(api_key="key", api_secret="secret", supplier_id="1")
        expected = base64.b64encode(b"key:secret").decode("ascii")

        assert creds.auth_headers() == {"Authorization": f"Basic {expected}"}

    def test_oauth_client_adds_company_header(self):
        creds = OAuthClientCredentials(
            company_id="77", client_id="c", client_secret="s", username="u", password="p"
        )

        assert creds.auth_headers()["X-Company-Id"] == "77"

    def test_erp_host_gets_scheme(self):
        """A bare ERP host is reached over https"""
        creds = ErpServerCredentials(host="erp.local:8080/", username="u", password="p")

        assert creds.resolve_base_url(None) == "https://erp.local:8080"

    def test_erp_host_keeps_explicit_scheme(self):
        creds = ErpServerCredentials(host="http://10.0.0.5", username="u", password="p")

        assert creds.resolve_base_url(None) == "http://10.0.0.5"

    def test_shopify_store_url(self):
        creds = ShopifyCredentials(access_token="t", shop_name="acme")

        assert creds.resolve_base_url(None) == "https://acme.myshopify.com/admin/api/2024-01"
        assert creds.auth_headers() == {"X-Shopify-Access-Token": "t"}

    def test_magento_store_url(self):
        creds = MagentoCredentials(access_token="t", base_url="https://shop.example/")

        assert creds.resolve_base_url(None) == "https://shop.example/rest/V1"


class TestCredentialCipher:
    """Test AES-GCM encryption of credential payloads"""

    @pytest.fixture
    def cipher(self) -> CredentialCipher:
        return CredentialCipher(os.urandom(32).hex())

    def test_round_trip(self, cipher):
        """Decrypting with the same provider id returns the payload"""
        payload = {"access_token": "secret-token"}

        blob = cipher.encrypt("shop-x", payload)

        assert b"secret-token" not in blob
        assert cipher.decrypt("shop-x", blob) == payload

    def test_fresh_iv_per_encryption(self, cipher):
        """The same payload never encrypts to the same blob twice"""
        payload = {"access_token": "t"}

        assert cipher.encrypt("shop-x", payload) != cipher.encrypt("shop-x", payload)

    def test_blob_bound_to_provider(self, cipher):
        """A blob moved to another provider fails authentication"""
        blob = cipher.encrypt("shop-x", {"access_token": "t"})

        with pytest.raises(EncryptionError):
            cipher.decrypt("trendyol", blob)

    def test_tampered_blob_rejected(self, cipher):
        blob = bytearray(cipher.encrypt("shop-x", {"access_token": "t"}))
        blob[-1] ^= 0x01

        with pytest.raises(EncryptionError, match="tampered"):
            cipher.decrypt("shop-x", bytes(blob))

    def test_wrong_key_rejected(self, cipher):
        blob = cipher.encrypt("shop-x", {"access_token": "t"})
        other = CredentialCipher(os.urandom(32).hex())

        with pytest.raises(EncryptionError):
            other.decrypt("shop-x", blob)

    def test_truncated_blob_rejected(self, cipher):
        with pytest.raises(EncryptionError, match="too short"):
            cipher.decrypt("shop-x", b"\x00" * IV_LENGTH)

    @pytest.mark.parametrize("key", [None, "", "not-hex", "00" * 16])
    def test_invalid_master_key(self, key):
        """Missing, non-hex and short keys are refused up front"""
        with pytest.raises(EncryptionError):
            CredentialCipher(key)
