import hashlib
import hmac
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import requests

from kudimarket.errors import GatewayError, ValidationError
from kudimarket.money import Money

logger = logging.getLogger(__name__)

CHANNELS = ["card", "mobile_money", "bank_transfer"]


@dataclass(frozen=True)
class ChargeHandle:
    reference: str
    authorization_url: str
    access_code: str | None = None


@dataclass(frozen=True)
class ChargeStatus:
    reference: str
    status: str
    amount: Money
    currency: str
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def generate_reference(prefix: str = "KUDI") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class PaymentGateway(ABC):
    """What the order core needs from a payment processor."""

    @abstractmethod
    def initialize_charge(self, email: str, amount: Money, reference: str,
                          metadata: dict | None = None) -> ChargeHandle: ...

    @abstractmethod
    def verify_charge(self, reference: str) -> ChargeStatus: ...

    @abstractmethod
    def validate_webhook_signature(self, payload: bytes, signature: str | None) -> bool: ...


class PaystackGateway(PaymentGateway):
    def __init__(self, secret_key: str | None, base_url: str = "https://api.paystack.co",
                 callback_url: str | None = None, timeout: float = 10.0,
                 max_retries: int = 3, backoff: float = 0.5,
                 session: requests.Session | None = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "PaystackGateway":
        return cls(
            secret_key=config.get("PAYSTACK_SECRET_KEY"),
            base_url=config.get("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            callback_url=config.get("PAYSTACK_CALLBACK_URL"),
            timeout=config.get("PAYSTACK_TIMEOUT", 10.0),
            max_retries=config.get("PAYSTACK_MAX_RETRIES", 3),
        )

    # ---------- HTTP ----------
    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        if not self.secret_key:
            raise GatewayError("paystack is not configured")
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        last_error = None

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self.session.request(method, url, json=payload, headers=headers, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning("paystack %s %s attempt %s/%s failed: %s",
                               method, path, attempt, self.max_retries, last_error)
            else:
                if resp.status_code < 500:
                    return self._unwrap(resp, path)
                last_error = f"upstream status {resp.status_code}"
                logger.warning("paystack %s %s attempt %s/%s returned %s",
                               method, path, attempt, self.max_retries, resp.status_code)
            if attempt < self.max_retries and self.backoff:
                time.sleep(self.backoff * attempt)

        raise GatewayError("payment provider unavailable", detail=last_error)

    @staticmethod
    def _unwrap(resp: requests.Response, path: str) -> dict:
        try:
            body = resp.json()
        except ValueError:
            raise GatewayError("invalid response from payment provider", status=resp.status_code)
        if not resp.ok or not body.get("status"):
            logger.error("paystack %s rejected: %s %s", path, resp.status_code, body.get("message"))
            raise GatewayError(body.get("message") or "payment provider rejected the request",
                               status=resp.status_code)
        return body.get("data") or {}

    # ---------- API ----------
    def initialize_charge(self, email, amount, reference, metadata=None):
        payload = {
            "email": email,
            "amount": amount.minor,
            "reference": reference,
            "metadata": metadata or {},
            "channels": CHANNELS,
        }
        if self.callback_url:
            payload["callback_url"] = f"{self.callback_url}?reference={reference}"
        data = self._request("POST", "/transaction/initialize", payload)
        if not data.get("authorization_url"):
            raise GatewayError("payment provider returned no authorization url")
        logger.info("paystack charge initialized: %s", reference)
        return ChargeHandle(
            reference=data.get("reference") or reference,
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )

    def verify_charge(self, reference):
        data = self._request("GET", f"/transaction/verify/{reference}")
        try:
            amount = Money(int(data.get("amount") or 0))
        except (TypeError, ValueError, ValidationError):
            raise GatewayError("payment provider returned an invalid amount")
        logger.info("paystack charge verified: %s status=%s", reference, data.get("status"))
        return ChargeStatus(
            reference=data.get("reference") or reference,
            status=data.get("status") or "unknown",
            amount=amount,
            currency=(data.get("currency") or "").upper(),
            raw=data,
        )

    def validate_webhook_signature(self, payload, signature):
        if not self.secret_key or not signature:
            return False
        expected = hmac.new(self.secret_key.encode(), payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)
