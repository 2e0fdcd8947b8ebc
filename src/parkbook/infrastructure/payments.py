# File: src/parkbook/infrastructure/payments.py
"""
Payment provider boundary

The engine treats gateways as opaque: initiation returns a redirect URL,
verification returns a status string plus the raw provider response. Only
"success" / "completed" are treated as paid.

SimulatedPaymentProvider stands in for Telebirr and CBE Birr in development
and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from ..domain.models import Payment, PaymentMethod

SUCCESS_STATUSES = ("success", "completed")
FAILURE_STATUSES = ("failed", "cancelled")


class PaymentGatewayError(Exception):
    """Raised by providers when the gateway call itself fails"""
    pass


@dataclass(frozen=True)
class PaymentInitiation:
    payment_url: str
    reference: str


@dataclass(frozen=True)
class PaymentVerification:
    status: str
    raw_response: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return self.status.lower() in SUCCESS_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status.lower() in FAILURE_STATUSES


class PaymentProvider(ABC):

    @abstractmethod
    def initiate_payment(self, payment: Payment) -> PaymentInitiation:
        pass

    @abstractmethod
    def verify_payment(self, reference: str) -> PaymentVerification:
        pass


class SimulatedPaymentProvider(PaymentProvider):
    """
    Provider that never leaves the process
    Every verification answers with `outcome`, or with a per-reference
    override set through set_outcome().
    """

    def __init__(self, name: str, base_url: str, outcome: str = "success"):
        self.name = name
        self.base_url = base_url.rstrip('/')
        self.outcome = outcome
        self._overrides: Dict[str, str] = {}
        self.verifications: Dict[str, int] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    def set_outcome(self, reference: str, outcome: str) -> None:
        self._overrides[reference] = outcome

    def initiate_payment(self, payment: Payment) -> PaymentInitiation:
        url = f"{self.base_url}/{self.name}/checkout/{payment.transaction_id}"
        self.logger.info(f"{self.name}: initiated {payment.transaction_id} for {payment.amount} {payment.currency}")
        return PaymentInitiation(payment_url=url, reference=payment.transaction_id)

    def verify_payment(self, reference: str) -> PaymentVerification:
        self.verifications[reference] = self.verifications.get(reference, 0) + 1
        status = self._overrides.get(reference, self.outcome)
        if status == "error":
            raise PaymentGatewayError(f"{self.name} did not answer for {reference}")
        return PaymentVerification(
            status=status,
            raw_response={"provider": self.name, "reference": reference, "status": status}
        )


class PaymentProviderRegistry:
    """Maps payment methods to the provider that settles them"""

    def __init__(self, providers: Optional[Dict[PaymentMethod, PaymentProvider]] = None):
        self._providers: Dict[PaymentMethod, PaymentProvider] = dict(providers or {})

    def register(self, method: PaymentMethod, provider: PaymentProvider) -> None:
        self._providers[PaymentMethod(method)] = provider

    def get(self, method: PaymentMethod) -> Optional[PaymentProvider]:
        return self._providers.get(PaymentMethod(method))

    @classmethod
    def simulated(cls, base_url: str, outcome: str = "success") -> 'PaymentProviderRegistry':
        return cls({
            PaymentMethod.TELEBIRR: SimulatedPaymentProvider("telebirr", base_url, outcome),
            PaymentMethod.CBE_BIRR: SimulatedPaymentProvider("cbe-birr", base_url, outcome),
        })
