import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from slotbook.services.errors import PaymentCollaboratorError

logger = logging.getLogger(__name__)


class PaymentGateway(ABC):
    """Escrow collaborator. Custody and settlement happen outside the engine.

    ``release_funds`` and ``refund`` are called for every completion and
    cancellation, including bookings whose escrow call returned no reference.
    """

    @abstractmethod
    def establish_escrow(self, booking_id: int, price_min: int, price_max: int) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def release_funds(self, payment_reference: Optional[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def refund(self, payment_reference: Optional[str]) -> None:
        raise NotImplementedError


class NullPaymentGateway(PaymentGateway):
    """Used when no payment backend is configured; bookings carry no reference."""

    def establish_escrow(self, booking_id: int, price_min: int, price_max: int) -> Optional[str]:
        return None

    def release_funds(self, payment_reference: Optional[str]) -> None:
        return None

    def refund(self, payment_reference: Optional[str]) -> None:
        return None


class HttpPaymentGateway(PaymentGateway):
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for the HTTP payment gateway")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self._base_url}{path}"
        try:
            response = self._client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Payment gateway call failed", extra={"path": path, "error": str(exc)})
            raise PaymentCollaboratorError(f"Payment gateway call to {path} failed") from exc
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentCollaboratorError(f"Payment gateway returned invalid JSON for {path}") from exc
        return data if isinstance(data, dict) else {}

    def establish_escrow(self, booking_id: int, price_min: int, price_max: int) -> Optional[str]:
        data = self._post(
            "/escrows",
            {"booking_id": booking_id, "price_min": price_min, "price_max": price_max},
        )
        reference = data.get("payment_reference") or data.get("id")
        if not reference:
            raise PaymentCollaboratorError("Payment gateway did not return an escrow reference")
        logger.info("Escrow established", extra={"booking_id": booking_id})
        return str(reference)

    def release_funds(self, payment_reference: Optional[str]) -> None:
        if payment_reference is None:
            logger.warning("No escrow held for booking, nothing to release", extra={"operation": "release_funds"})
            return
        self._post(f"/escrows/{payment_reference}/release", {})

    def refund(self, payment_reference: Optional[str]) -> None:
        if payment_reference is None:
            logger.warning("No escrow held for booking, nothing to refund", extra={"operation": "refund"})
            return
        self._post(f"/escrows/{payment_reference}/refund", {})
