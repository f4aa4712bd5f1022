"""
TapPay pay-by-prime client
"""
import logging
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel, ConfigDict

from common.error_handling import GatewayUnavailable
from common.schemas import Cardholder
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)

class GatewayResult(BaseModel):
    """Gateway answer; status 0 means the charge was authorized"""
    model_config = ConfigDict(extra="allow")

    status: int
    rec_trade_id: Optional[str] = None
    msg: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status == 0

    def raw(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)

def generate_details(phone_number: str, cardholder: Cardholder) -> str:
    """`phone,nationalOrTaxId,note` string shown on the gateway's transaction record"""
    national_or_tax_id = cardholder.nationalid if cardholder.nationalid is not None else (cardholder.taxid or "")
    return f"{phone_number},{national_or_tax_id},{cardholder.note or ''}"

def resolve_payment_env(api_url: str) -> str:
    return "sandbox" if api_url and "sandbox" in api_url else "production"

class TapPayClient:
    def __init__(self, api_url: str, partner_key: str, merchant_id: str, currency: str,
                 timeout: float = 30.0, session: requests.Session = None):
        self.api_url = api_url
        self.partner_key = partner_key
        self.merchant_id = merchant_id
        self.currency = currency
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def env(self) -> str:
        return resolve_payment_env(self.api_url)

    def charge(self, phone_number: str, prime: str, amount: int, cardholder: Cardholder) -> GatewayResult:
        """Single authorization attempt. A decline is returned, never raised."""
        body = {
            "prime": prime,
            "partner_key": self.partner_key,
            "merchant_id": self.merchant_id,
            "amount": amount,
            "cardholder": cardholder.model_dump(exclude_none=True),
            "currency": self.currency,
            "details": generate_details(phone_number, cardholder),
            "remember": False,
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.partner_key,
            **get_trace_headers(),
        }

        try:
            response = self.session.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            result = GatewayResult.model_validate(response.json())
        except requests.RequestException as e:
            detail = e.response.text if getattr(e, "response", None) is not None else str(e)
            logger.error(f"Error calling TapPay API: {detail}")
            raise GatewayUnavailable("TapPay payment request failed", original_error=e) from e
        except ValueError as e:
            # non-JSON body or a payload without a status
            logger.error(f"Unexpected TapPay response: {e}")
            raise GatewayUnavailable("TapPay payment request failed", original_error=e) from e

        if result.is_success:
            logger.info(f"TapPay authorized charge {result.rec_trade_id} for {amount} {self.currency}")
        else:
            logger.info(f"TapPay declined charge with status {result.status}")
        return result
