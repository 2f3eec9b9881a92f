# schemas/payment.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: PAYMENT VOCABULARY
# ============================================================================
# Purpose: Shared payment status vocabulary, gateway-facing value objects
# and the typed confirmation commands.
#
# TRUST BOUNDARY:
# - ConfirmFromWebhook is only ever built from a signature-verified webhook
# - ConfirmFromClient carries untrusted client data and always re-queries
#   the gateway before anything is marked as paid
# ============================================================================

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from schemas.base import CamelModel, Money, new_id, utcnow


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.REFUNDED})


class PaymentMethodType(str, Enum):
    CREDIT_CARD = "credit_card"
    CRYPTO = "crypto"
    BINANCE_PAY = "binance_pay"
    PAYPAL = "paypal"


class GatewayName(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    COINBASE = "coinbase"
    BITPAY = "bitpay"
    NOWPAYMENTS = "nowpayments"
    BINANCE_PAY = "binance_pay"


class CreditCardGateway(str, Enum):
    STRIPE = "stripe"


class CryptoGateway(str, Enum):
    COINBASE = "coinbase"
    BITPAY = "bitpay"
    NOWPAYMENTS = "nowpayments"


class CryptoCurrency(str, Enum):
    BTC = "BTC"
    ETH = "ETH"
    LTC = "LTC"
    BCH = "BCH"
    USDT = "USDT"
    USDC = "USDC"


# ============================================================================
# SECTION 2: GATEWAY VALUE OBJECTS
# ============================================================================

class PaymentIntent(CamelModel):
    """Processor-side handle for an authorized-but-unsettled payment"""
    id: str
    amount: Money
    currency: str
    status: PaymentStatus
    client_secret: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentResult(CamelModel):
    success: bool
    payment_id: str
    transaction_id: Optional[str] = None
    status: PaymentStatus
    amount: Money = Decimal("0")
    currency: str = "USD"
    gateway_response: Optional[Dict[str, Any]] = Field(default=None, exclude=True)
    error: Optional[str] = None

    @classmethod
    def failure(
        cls,
        payment_id: str,
        error: str,
        currency: str = "USD",
        status: PaymentStatus = PaymentStatus.FAILED,
    ) -> "PaymentResult":
        return cls(
            success=False,
            payment_id=payment_id,
            status=status,
            currency=currency,
            error=error,
        )


class WebhookEvent(BaseModel):
    """Signature-verified webhook, still in the processor's own vocabulary"""
    id: str = Field(default_factory=new_id)
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    signature: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class WebhookOutcome(CamelModel):
    """Normalized result of handling a webhook"""
    success: bool
    gateway: str
    payment_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    event_type: Optional[str] = None
    error: Optional[str] = None


# ============================================================================
# SECTION 3: CONFIRMATION COMMANDS
# ============================================================================

class ConfirmFromWebhook(BaseModel):
    """Trusted confirmation derived from a verified webhook"""
    kind: Literal["webhook"] = "webhook"
    transaction_id: str
    status: PaymentStatus
    event_type: Optional[str] = None
    gateway: Optional[str] = None


class ConfirmFromClient(BaseModel):
    """Client-initiated confirmation; the gateway decides the outcome"""
    kind: Literal["client"] = "client"
    method_data: Dict[str, Any] = Field(default_factory=dict)


ConfirmCommand = Union[ConfirmFromWebhook, ConfirmFromClient]


# ============================================================================
# SECTION 4: PAYMENT METHOD (checkout input)
# ============================================================================

class CreditCardDetails(CamelModel):
    token: Optional[str] = None
    gateway: CreditCardGateway = CreditCardGateway.STRIPE
    last4: Optional[str] = None
    brand: Optional[str] = None
    return_url: Optional[str] = None


class CryptoDetails(CamelModel):
    currency: CryptoCurrency = CryptoCurrency.USDT
    gateway: CryptoGateway = CryptoGateway.COINBASE
    wallet_address: Optional[str] = None


class BinancePayDetails(CamelModel):
    currency: str = "USDT"
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PayPalDetails(CamelModel):
    payment_id: Optional[str] = None
    payer_id: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PaymentMethod(CamelModel):
    type: PaymentMethodType
    credit_card: Optional[CreditCardDetails] = None
    crypto: Optional[CryptoDetails] = None
    binance_pay: Optional[BinancePayDetails] = None
    paypal: Optional[PayPalDetails] = None

    def resolve_gateway(self) -> str:
        """Gateway registry key for this method"""
        if self.type == PaymentMethodType.CREDIT_CARD:
            return self.credit_card.gateway.value if self.credit_card else GatewayName.STRIPE.value
        if self.type == PaymentMethodType.CRYPTO:
            return self.crypto.gateway.value if self.crypto else GatewayName.COINBASE.value
        if self.type == PaymentMethodType.PAYPAL:
            return GatewayName.PAYPAL.value
        return GatewayName.BINANCE_PAY.value

    def can_auto_confirm(self) -> bool:
        """Card with a token or PayPal with an approved payment id"""
        if self.type == PaymentMethodType.CREDIT_CARD:
            return bool(self.credit_card and self.credit_card.token)
        if self.type == PaymentMethodType.PAYPAL:
            return bool(self.paypal and self.paypal.payment_id)
        return False

    def confirmation_data(self) -> Dict[str, Any]:
        """Method data handed to the gateway on confirmation"""
        if self.type == PaymentMethodType.CREDIT_CARD and self.credit_card:
            return {
                "payment_method": self.credit_card.token,
                "return_url": self.credit_card.return_url,
            }
        if self.type == PaymentMethodType.PAYPAL and self.paypal:
            return {"paymentId": self.paypal.payment_id, "payerId": self.paypal.payer_id}
        if self.type == PaymentMethodType.CRYPTO and self.crypto:
            return {"walletAddress": self.crypto.wallet_address, "currency": self.crypto.currency.value}
        if self.type == PaymentMethodType.BINANCE_PAY and self.binance_pay:
            return {"currency": self.binance_pay.currency, "returnUrl": self.binance_pay.return_url}
        return {}

    def intent_currency(self, default: str) -> str:
        """Binance Pay settles in crypto only; everything else uses the store currency"""
        if self.type == PaymentMethodType.BINANCE_PAY:
            return (self.binance_pay.currency if self.binance_pay else "USDT").upper()
        return default

    def intent_metadata(self) -> Dict[str, Any]:
        """Redirect URLs and currency hints forwarded at intent creation"""
        details = self.paypal or self.binance_pay
        metadata: Dict[str, Any] = {}
        if details is not None:
            if details.return_url:
                metadata["returnUrl"] = details.return_url
            if details.cancel_url:
                metadata["cancelUrl"] = details.cancel_url
        if self.crypto:
            metadata["payCurrency"] = self.crypto.currency.value
        return metadata
