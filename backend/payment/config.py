"""
Gateway Configuration
=====================
Credentials, endpoints and outbound call policy for every processor.
"""

import os


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class GatewayConfig:
    """Payment gateway configuration from environment"""

    # Outbound call policy (applies to every gateway)
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "20"))
    GATEWAY_MAX_RETRIES = int(os.getenv("GATEWAY_MAX_RETRIES", "3"))
    GATEWAY_RETRY_BACKOFF_SECONDS = float(os.getenv("GATEWAY_RETRY_BACKOFF_SECONDS", "0.5"))

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

    # PayPal
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
    PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox")
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID", "")

    # Coinbase Commerce
    COINBASE_COMMERCE_API_KEY = os.getenv("COINBASE_COMMERCE_API_KEY", "")
    COINBASE_COMMERCE_WEBHOOK_SECRET = os.getenv("COINBASE_COMMERCE_WEBHOOK_SECRET", "")

    # BitPay
    BITPAY_TOKEN = os.getenv("BITPAY_TOKEN", "")
    BITPAY_ENVIRONMENT = os.getenv("BITPAY_ENVIRONMENT", "test")

    # NOWPayments
    NOWPAYMENTS_API_KEY = os.getenv("NOWPAYMENTS_API_KEY", "")
    NOWPAYMENTS_IPN_SECRET = os.getenv("NOWPAYMENTS_IPN_SECRET", "")
    NOWPAYMENTS_SANDBOX = _flag("NOWPAYMENTS_SANDBOX")

    # Binance Pay
    BINANCE_PAY_API_KEY = os.getenv("BINANCE_PAY_API_KEY", "")
    BINANCE_PAY_SECRET_KEY = os.getenv("BINANCE_PAY_SECRET_KEY", "")
    BINANCE_PAY_CERTIFICATE_SN = os.getenv("BINANCE_PAY_CERTIFICATE_SN", "")
    BINANCE_PAY_BASE_URL = os.getenv("BINANCE_PAY_BASE_URL", "https://bpay.binanceapi.com")

    # Redirect targets
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")


config = GatewayConfig()
