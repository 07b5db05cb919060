#!/usr/bin/env python3
"""
Fincra Payment Service for NGN (Nigeria Naira) Payouts
Handles bank account name enquiry, payouts and payout status checks
"""

import logging
import aiohttp
import asyncio
import re
from decimal import Decimal
from typing import Optional, Dict, Any
from config import Config
from utils.offramp_errors import ProviderUnavailableError

logger = logging.getLogger(__name__)

NUBAN_PATTERN = re.compile(r"^\d{10}$")

# Provider statuses that settle a payout one way or the other
PAYOUT_SUCCESS_STATUSES = {"successful", "success", "completed"}
PAYOUT_FAILURE_STATUSES = {"failed", "reversed", "declined"}


def classify_payout_status(status: Optional[str]) -> str:
    """Map a provider status to 'successful', 'failed' or 'processing'"""
    normalized = (status or "").lower()
    if normalized in PAYOUT_SUCCESS_STATUSES:
        return "successful"
    if normalized in PAYOUT_FAILURE_STATUSES:
        return "failed"
    return "processing"


class FincraService:
    """Service for handling Fincra NGN payouts"""

    def __init__(self):
        self.secret_key = Config.FINCRA_SECRET_KEY
        self.public_key = Config.FINCRA_PUBLIC_KEY
        self.business_id = Config.FINCRA_BUSINESS_ID
        self.base_url = Config.FINCRA_BASE_URL
        self.test_mode = Config.FINCRA_TEST_MODE
        self.timeout = aiohttp.ClientTimeout(total=30)

        if not self.secret_key or not self.public_key:
            logger.warning(
                "FINCRA_SECRET_KEY or FINCRA_PUBLIC_KEY not configured - Fincra payouts will not work"
            )

    def is_available(self) -> bool:
        """Check if Fincra service is properly configured"""
        return bool(self.secret_key and self.public_key and Config.FINCRA_ENABLED)

    async def _make_request(
        self, method: str, endpoint: str, data: Optional[Dict] = None
    ) -> Optional[Dict]:
        """
        Make an authenticated request.

        Returns the response body on success and None when Fincra answered
        with a definite refusal (4xx, or not configured). Raises
        ProviderUnavailableError on timeouts, network errors, 5xx and
        unreadable 2xx bodies, where the request may or may not have landed.
        """
        if not self.is_available():
            logger.error("Fincra service not available - missing API keys")
            return None

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "api-key": self.secret_key,
            "x-pub-key": self.public_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.business_id:
            headers["x-business-id"] = self.business_id

        logger.debug(f"Fincra request: {method} {endpoint} ({'TEST' if self.test_mode else 'LIVE'} mode)")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=headers, json=data) as response:
                    try:
                        response_data = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        response_data = {"message": await response.text()}
                    if not isinstance(response_data, dict):
                        response_data = {"message": response_data}

                    if response.status in [200, 201]:
                        if response_data.get("success") or response_data.get("status"):
                            logger.info(f"Fincra API success: {method} {endpoint}")
                            return response_data
                        logger.error(f"Fincra API unreadable success body: {method} {endpoint} - {response_data}")
                        raise ProviderUnavailableError(f"Fincra {method} {endpoint} returned an unreadable body")

                    if response.status >= 500:
                        logger.error(f"Fincra API server error: {response.status} - {response_data}")
                        raise ProviderUnavailableError(f"Fincra {method} {endpoint} returned {response.status}")

                    if response.status == 401:
                        logger.error(f"Fincra authentication failed: {response_data}")
                        logger.error("🔑 Check FINCRA_SECRET_KEY and ensure it matches the environment (LIVE/TEST)")
                    elif response.status == 422 and "NO_ENOUGH_MONEY_IN_WALLET" in str(response_data):
                        logger.critical(f"🚨 FINCRA_WALLET_EMPTY: {response_data}")
                    else:
                        logger.error(f"Fincra API error: {response.status} - {response_data}")
                    return None

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error_type = type(e).__name__
            if isinstance(e, asyncio.TimeoutError):
                error_context = f"Timeout connecting to Fincra API ({self.base_url})"
            else:
                error_context = f"Network error accessing Fincra API ({self.base_url})"
            logger.error(f"Fincra network error: {error_context} - {error_type}: {e}")
            raise ProviderUnavailableError(f"{error_context}: {error_type}") from e

    async def verify_account_name(
        self, account_number: str, bank_code: str
    ) -> Optional[str]:
        """Name enquiry; returns the account holder name or None"""
        if not NUBAN_PATTERN.match(account_number or ""):
            logger.warning(f"Rejected account number {account_number!r}: NUBAN must be 10 digits")
            return None

        logger.info(f"🔍 Verifying account ****{account_number[-4:]} with bank {bank_code}")
        verify_data = {
            "accountNumber": account_number,
            "bankCode": bank_code,
            "type": "nuban",
        }
        try:
            response = await self._make_request("POST", "/core/accounts/resolve", verify_data)
        except ProviderUnavailableError as e:
            logger.warning(f"Account verification unavailable for ****{account_number[-4:]}: {e}")
            return None

        if response and response.get("data"):
            account_name = response["data"].get("accountName")
            if account_name:
                logger.info(f"Verified account: ****{account_number[-4:]} -> {account_name}")
                return account_name

        logger.warning(f"Account verification failed for ****{account_number[-4:]} / {bank_code}")
        return None

    async def initiate_payout(
        self,
        amount_ngn: Decimal,
        bank_code: str,
        account_number: str,
        account_name: str,
        reference: str,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Initiate NGN payout to a Nigerian bank account.

        `reference` is sent as customerReference and doubles as the
        idempotency key on Fincra's side. Never reports success unless the
        API accepted the payout, and only reports failure when Fincra refused
        it; an unknown outcome raises ProviderUnavailableError.
        """
        payout_data = {
            "business": self.business_id,
            "sourceCurrency": "NGN",
            "destinationCurrency": "NGN",
            "amount": str(int(amount_ngn)),
            "description": f"{Config.PLATFORM_NAME} off-ramp {reference}",
            "customerReference": reference,
            "paymentDestination": "bank_account",
            "beneficiary": {
                "firstName": (
                    account_name.split()[0] if " " in account_name else account_name
                ),
                "lastName": (
                    account_name.split()[-1] if " " in account_name else "User"
                ),
                "accountHolderName": account_name,
                "accountNumber": account_number,
                "country": "NG",
                "bankCode": bank_code,
                "type": "individual",
            },
        }

        response = await self._make_request("POST", "/disbursements/payouts", payout_data)

        if response is None:
            logger.error(f"REAL PAYOUT FAILED for {reference} - rejected by Fincra")
            return {
                "success": False,
                "error": "Payout API request failed - money NOT sent",
                "reference": reference,
            }
        if not response.get("data"):
            raise ProviderUnavailableError(f"Fincra accepted payout {reference} without payout data")

        payout_info = response["data"]
        logger.info(f"Initiated Fincra payout for user {user_id}: {reference}")
        return {
            "success": True,
            "payout_id": payout_info.get("id"),
            "reference": reference,
            "amount_ngn": amount_ngn,
            "status": str(payout_info.get("status", "processing")).lower(),
            "bank_code": bank_code,
            "account_number": account_number,
            "account_name": account_name,
        }

    async def check_transfer_status_by_reference(
        self, reference: str
    ) -> Optional[Dict]:
        """Payout status by our customer reference; None when Fincra has no such payout"""
        response = await self._make_request(
            "GET", f"/disbursements/payouts/customer-reference/{reference}"
        )
        if not response or not response.get("data"):
            return None

        transfer_data = response["data"]
        return {
            "status": str(transfer_data.get("status", "processing")).lower(),
            "reference": reference,
            "transfer_id": transfer_data.get("id"),
            "amount": transfer_data.get("amount"),
            "currency": transfer_data.get("destinationCurrency", "NGN"),
            "updated_at": transfer_data.get("updatedAt"),
            "failure_reason": transfer_data.get("reason") or transfer_data.get("failureReason"),
        }

    async def verify_payment(self, reference: str) -> Optional[Dict]:
        """Verify an inbound payment (on-ramp deposit) by merchant reference"""
        response = await self._make_request(
            "GET", f"/checkout/payments/merchant-reference/{reference}"
        )
        if not response or not response.get("data"):
            return None

        payment_data = response["data"]
        return {
            "status": str(payment_data.get("status", "pending")).lower(),
            "reference": reference,
            "amount": payment_data.get("amount"),
            "currency": payment_data.get("currency", "NGN"),
            "fincra_ref": payment_data.get("id"),
        }


# Global service instance
fincra_service = None


def get_fincra_service() -> FincraService:
    """Get or create shared Fincra service instance"""
    global fincra_service
    if fincra_service is None:
        fincra_service = FincraService()
    return fincra_service
