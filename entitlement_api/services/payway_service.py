"""
PayWay hosted-checkout adapter.

Builds the signed purchase form, submits it, and interprets the provider's
answer. The signing scheme sits behind the Signer interface; the contract this
module guarantees is that the signature covers exactly the transmitted fields,
in transmission order.
"""
import base64
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from entitlement_api.core import config
from entitlement_api.core.exceptions import BillingValidationError, GatewayError
from entitlement_api.core.logging_config import sanitize_log_data
from entitlement_api.core.time_utils import utcnow
from entitlement_api.db.models.transaction import TransactionStatus

logger = logging.getLogger(__name__)

# Field order defined by the provider for purchase requests
PAYWAY_KEYS: Tuple[str, ...] = (
    "req_time",
    "merchant_id",
    "tran_id",
    "amount",
    "items",
    "shipping",
    "firstname",
    "lastname",
    "email",
    "phone",
    "type",
    "payment_option",
    "return_url",
    "cancel_url",
    "continue_success_url",
    "return_deeplink",
    "currency",
    "custom_fields",
    "return_params",
    "payout",
    "lifetime",
    "additional_params",
    "google_pay_token",
    "skip_success_page",
)

CHECK_TRANSACTION_KEYS: Tuple[str, ...] = ("req_time", "merchant_id", "tran_id")

SUCCESS_PAYMENT_STATUSES = {"success", "completed", "approved"}


class Signer(ABC):
    """Computes the request signature over an ordered field set."""

    @abstractmethod
    def sign(self, fields: Mapping[str, str]) -> str:
        """Return the signature for fields, in their iteration order."""


class HmacSha512Signer(Signer):
    """Concatenate values in order, HMAC-SHA512 with the merchant API key, base64."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("PayWay API key is required for signing")
        self._key = api_key.encode("utf-8")

    def sign(self, fields: Mapping[str, str]) -> str:
        message = "".join(str(value) for value in fields.values())
        digest = hmac.new(self._key, message.encode("utf-8"), hashlib.sha512).digest()
        return base64.b64encode(digest).decode("ascii")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def build_ordered_fields(values: Mapping[str, Any], order: Tuple[str, ...] = PAYWAY_KEYS) -> "OrderedDict[str, str]":
    """
    Keep only non-empty fields, stringified, in provider order.

    Raises:
        BillingValidationError: a key outside the provider's field list was given
    """
    unknown = set(values) - set(order)
    if unknown:
        raise BillingValidationError(f"Unsupported PayWay fields: {sorted(unknown)}")

    ordered: "OrderedDict[str, str]" = OrderedDict()
    for key in order:
        value = values.get(key)
        if not _is_empty(value):
            ordered[key] = str(value)
    return ordered


def encode_items(items: List[Dict[str, Any]]) -> str:
    """Base64-encoded JSON line items."""
    return base64.b64encode(json.dumps(items).encode("utf-8")).decode("ascii")


@dataclass
class GatewayResponse:
    status_code: int
    redirect_url: Optional[str] = None
    html: Optional[str] = None


@dataclass
class CheckResult:
    """Provider view of a transaction, mapped to our status."""
    status: TransactionStatus
    payment_status_message: Optional[str] = None
    transaction_date: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _parse_transaction_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S"):
        try:
            return datetime.strptime(text[:19], fmt)
        except ValueError:
            continue
    logger.warning(f"Unrecognised PayWay transaction_date: {text}")
    return None


def interpret_check_response(data: Mapping[str, Any]) -> CheckResult:
    """
    Map a check-transaction response onto pending/completed/failed.

    Payment details under "data" win; without them a top-level success code
    (status == 0 or status.code == "00") counts as completed. Anything
    inconclusive stays pending.
    """
    details = data.get("data")
    if isinstance(details, Mapping):
        code = details.get("payment_status_code")
        message = details.get("payment_status")
        paid = code in (0, "0") or str(message or "").lower() in SUCCESS_PAYMENT_STATUSES
        return CheckResult(
            status=TransactionStatus.COMPLETED if paid else TransactionStatus.FAILED,
            payment_status_message=message,
            transaction_date=_parse_transaction_date(details.get("transaction_date")),
            raw=dict(data),
        )

    status = data.get("status")
    if status == 0 or (isinstance(status, Mapping) and str(status.get("code")) == "00"):
        return CheckResult(status=TransactionStatus.COMPLETED, raw=dict(data))

    return CheckResult(status=TransactionStatus.PENDING, raw=dict(data))


class PayWayGateway:
    """
    Outbound PayWay client. One network call per operation, never retried here.

    Args:
        merchant_id: PayWay merchant id
        signer: Signature scheme
        client: httpx client (injected in tests); created on demand otherwise
    """

    def __init__(
        self,
        merchant_id: str,
        signer: Signer,
        purchase_url: str = config.PAYWAY_PURCHASE_URL,
        check_url: str = config.PAYWAY_CHECK_TRANSACTION_URL,
        client: Optional[httpx.Client] = None,
        timeout: float = config.PAYWAY_TIMEOUT_SECONDS,
    ):
        if not merchant_id:
            raise ValueError("PayWay merchant id is required")
        self.merchant_id = merchant_id
        self.signer = signer
        self.purchase_url = purchase_url
        self.check_url = check_url
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def sign_form(self, fields: "OrderedDict[str, str]") -> Dict[str, str]:
        """The transmitted form: the ordered fields plus their signature."""
        form = dict(fields)
        form["hash"] = self.signer.sign(fields)
        return form

    def submit_purchase(self, fields: "OrderedDict[str, str]") -> GatewayResponse:
        """
        POST the signed purchase form.

        Returns:
            redirect_url when the provider redirects to its hosted page,
            otherwise the HTML body for direct rendering

        Raises:
            GatewayError: non-2xx response
        """
        form = self.sign_form(fields)
        logger.info(f"PayWay purchase request: {sanitize_log_data(form)}")

        response = self.client.post(self.purchase_url, data=form, follow_redirects=True)

        if not response.is_success:
            logger.error(f"PayWay purchase failed: status={response.status_code}, body={response.text[:500]}")
            raise GatewayError(response.status_code, response.text, tran_id=fields.get("tran_id"))

        if response.history:
            logger.info(f"PayWay redirected tran_id={fields.get('tran_id')} to hosted page")
            return GatewayResponse(status_code=response.status_code, redirect_url=str(response.url))

        return GatewayResponse(status_code=response.status_code, html=response.text)

    def check_transaction(self, tran_id: str, req_time: Optional[str] = None) -> Dict[str, Any]:
        """
        Ask the provider for the current state of tran_id.

        Raises:
            GatewayError: non-2xx or non-JSON response
        """
        req_time = req_time or f"{utcnow():%Y%m%d%H%M%S}"
        fields = build_ordered_fields(
            {"req_time": req_time, "merchant_id": self.merchant_id, "tran_id": tran_id},
            order=CHECK_TRANSACTION_KEYS,
        )
        response = self.client.post(self.check_url, data=self.sign_form(fields))

        if not response.is_success:
            logger.error(f"PayWay check-transaction failed: tran_id={tran_id}, status={response.status_code}")
            raise GatewayError(response.status_code, response.text, tran_id=tran_id)

        try:
            payload = response.json()
        except ValueError:
            raise GatewayError(response.status_code, response.text, tran_id=tran_id)
        if not isinstance(payload, dict):
            raise GatewayError(response.status_code, response.text, tran_id=tran_id)

        logger.info(f"PayWay check-transaction: tran_id={tran_id}, status={payload.get('status')}")
        return payload


def build_gateway(client: Optional[httpx.Client] = None) -> PayWayGateway:
    """Gateway configured from environment settings."""
    if not config.PAYWAY_MERCHANT_ID or not config.PAYWAY_API_KEY:
        raise ValueError("Missing PAYWAY_MERCHANT_ID or PAYWAY_API_KEY environment variables")
    return PayWayGateway(
        merchant_id=config.PAYWAY_MERCHANT_ID,
        signer=HmacSha512Signer(config.PAYWAY_API_KEY),
        purchase_url=config.PAYWAY_PURCHASE_URL,
        check_url=config.PAYWAY_CHECK_TRANSACTION_URL,
        client=client,
    )
