"""Receiptsync integrations module."""

from receiptsync.integrations.exchange_rates import ExchangeRateService
from receiptsync.integrations.realtime import RealtimeBridge
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.integrations.vision_extractor import (
    ExtractionError,
    ExtractionIncompleteError,
    ExtractionRefusedError,
    VisionExtractor,
)

__all__ = [
    "ExchangeRateService",
    "ExtractionError",
    "ExtractionIncompleteError",
    "ExtractionRefusedError",
    "RealtimeBridge",
    "SupabaseGateway",
    "VisionExtractor",
]
