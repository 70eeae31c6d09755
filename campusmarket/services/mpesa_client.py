"""
M-Pesa Daraja API HTTP Client integration.
Implements the STK push (Lipa na M-Pesa Online) flow:
  1. Backend obtains an OAuth access token (cached until shortly before expiry)
  2. Backend submits an STK push; Safaricom prompts the payer's phone
  3. Safaricom POSTs the result to our callback URL asynchronously
"""

import base64
import logging
import math
import time
from decimal import Decimal
from typing import Dict, Optional

import httpx

from campusmarket.core.config import Settings, get_settings
from campusmarket.core.errors import GatewayAuthError, GatewayRejected
from campusmarket.core.redis import cache_delete, cache_get, cache_set

logger = logging.getLogger(__name__)

TOKEN_CACHE_KEY = "mpesa:access_token"


class MpesaDarajaClient:
    """
    HTTP integration with Safaricom Daraja.
    Pass `transport` to substitute an httpx.MockTransport in tests.
    """
    SANDBOX_URL = "https://sandbox.safaricom.co.ke"
    PRODUCTION_URL = "https://api.safaricom.co.ke"

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings or get_settings()
        self.base_url = self.SANDBOX_URL if self.settings.MPESA_ENV == "sandbox" else self.PRODUCTION_URL
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.settings.MPESA_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    def is_configured(self) -> bool:
        s = self.settings
        return all([
            s.MPESA_CONSUMER_KEY,
            s.MPESA_CONSUMER_SECRET,
            s.MPESA_SHORTCODE,
            s.MPESA_PASSKEY,
            s.MPESA_CALLBACK_URL,
            s.MPESA_CALLBACK_TOKEN,
        ])

    @property
    def callback_url(self) -> str:
        """Result URL handed to Safaricom, ending in the secret callback token."""
        return f"{self.settings.MPESA_CALLBACK_URL.rstrip('/')}/{self.settings.MPESA_CALLBACK_TOKEN}"

    # ─── OAuth ──────────────────────────────────────────────────

    def request_token(self) -> str:
        """Return a valid access token, fetching a new one only when the cached one has lapsed."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        cached = cache_get(TOKEN_CACHE_KEY)
        if cached:
            self._remember_token(cached)
            return cached

        if not self.is_configured():
            logger.error("[MPESA] Credentials not configured")
            raise GatewayAuthError("Payment system not configured. Please contact support.")

        try:
            with self._client() as client:
                response = client.get(
                    "/oauth/v1/generate",
                    params={"grant_type": "client_credentials"},
                    auth=(self.settings.MPESA_CONSUMER_KEY, self.settings.MPESA_CONSUMER_SECRET),
                )
        except httpx.HTTPError as e:
            logger.error("[MPESA] Token request failed: %s", e)
            raise GatewayAuthError() from e

        if response.status_code != 200:
            logger.error("[MPESA] Token request rejected (%s): %s", response.status_code, response.text)
            raise GatewayAuthError()

        token = response.json().get("access_token")
        if not token:
            raise GatewayAuthError("Payment provider returned no access token")

        self._remember_token(token)
        cache_set(TOKEN_CACHE_KEY, token, ttl=self.settings.MPESA_TOKEN_TTL_SECONDS)
        logger.info("[MPESA] Obtained new access token")
        return token

    def _remember_token(self, token: str) -> None:
        self._token = token
        self._token_expires_at = time.monotonic() + self.settings.MPESA_TOKEN_TTL_SECONDS

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0
        cache_delete(TOKEN_CACHE_KEY)

    # ─── STK push ───────────────────────────────────────────────

    @staticmethod
    def _timestamp() -> str:
        return time.strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.settings.MPESA_SHORTCODE}{self.settings.MPESA_PASSKEY}{timestamp}".encode("utf-8")
        return base64.b64encode(raw).decode("utf-8")

    def initiate_charge(self, amount: Decimal, phone: str, reference: str, callback_url: Optional[str] = None) -> Dict:
        """
        Submit an STK push charge.

        Returns:
            The gateway response, including CheckoutRequestID and MerchantRequestID

        Raises:
            GatewayAuthError: token could not be obtained
            GatewayRejected: the charge request was refused or unreachable
        """
        token = self.request_token()
        timestamp = self._timestamp()
        shortcode = self.settings.MPESA_SHORTCODE

        payload = {
            "BusinessShortCode": shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": math.ceil(amount),
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback_url or self.callback_url,
            "AccountReference": reference,
            "TransactionDesc": self.settings.MPESA_TRANSACTION_DESC,
        }

        try:
            with self._client() as client:
                response = client.post(
                    "/mpesa/stkpush/v1/processrequest",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            logger.error("[MPESA] STK push request failed: %s", e)
            raise GatewayRejected("Payment provider is unreachable, please try again") from e

        if response.status_code == 401:
            self.invalidate_token()
            raise GatewayAuthError()

        # Error payloads still carry a JSON body worth reporting
        try:
            data = response.json()
        except ValueError:
            logger.error("[MPESA] Non-JSON STK response (%s): %s", response.status_code, response.text)
            raise GatewayRejected()

        if str(data.get("ResponseCode")) != "0":
            message = data.get("ResponseDescription") or data.get("errorMessage") or "Failed to initiate payment"
            logger.warning("[MPESA] STK push rejected | ref=%s | %s", reference, message)
            raise GatewayRejected(message)

        logger.info(
            "[MPESA] STK push accepted | ref=%s | checkout=%s",
            reference, data.get("CheckoutRequestID"),
        )
        return data
