"""Application services — use case orchestration."""

from marketplace_escrow.services.account_service import ConnectedAccountService
from marketplace_escrow.services.checkout_service import CheckoutService
from marketplace_escrow.services.expiration_sweeper import ExpirationSweeper, SweepResult
from marketplace_escrow.services.offer_service import OfferService
from marketplace_escrow.services.processor_events import ProcessorEventHandler
from marketplace_escrow.services.release_service import ReleaseService
from marketplace_escrow.services.settlement_service import (
    SettlementMaterializer,
    SettlementResult,
)

__all__ = [
    "CheckoutService",
    "ConnectedAccountService",
    "ExpirationSweeper",
    "OfferService",
    "ProcessorEventHandler",
    "ReleaseService",
    "SettlementMaterializer",
    "SettlementResult",
    "SweepResult",
]
