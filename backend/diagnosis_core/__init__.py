from .llm import OpenRouterStreamClient, StreamError, TextStreamProvider
from .logging_utils import get_logger, setup_logging
from .orchestrator import (
    InputError,
    InteractionOrchestrator,
    InteractionRelay,
    PreparedInteraction,
    build_messages,
    user_trailer,
)
from .payment import (
    AllowAllPaymentGate,
    PaymentDecision,
    PaymentError,
    PaymentGate,
    X402PaymentGate,
    normalize_network,
    price_to_atomic_units,
)
from .settings import Settings, StartupError

__all__ = [
    "AllowAllPaymentGate",
    "InputError",
    "InteractionOrchestrator",
    "InteractionRelay",
    "OpenRouterStreamClient",
    "PaymentDecision",
    "PaymentError",
    "PaymentGate",
    "PreparedInteraction",
    "Settings",
    "StartupError",
    "StreamError",
    "TextStreamProvider",
    "X402PaymentGate",
    "build_messages",
    "get_logger",
    "normalize_network",
    "price_to_atomic_units",
    "setup_logging",
    "user_trailer",
]
