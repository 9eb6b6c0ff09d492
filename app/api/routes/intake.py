"""Intake endpoints: run a scan cycle on demand and read the watermark."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_polling_scanner, get_store
from app.core.logging import get_logger
from app.schemas.candidate import ScanResult, WatermarkResponse
from app.services.ingestion.scanner import IntakeScanner
from app.services.store.base import DEFAULT_WATERMARK, PaymentStore

logger = get_logger(__name__)

router = APIRouter()


@router.post("/scan", response_model=ScanResult)
def run_scan(
    scanner: IntakeScanner = Depends(get_polling_scanner),
) -> ScanResult:
    """Run one intake cycle now instead of waiting for the scheduler."""
    logger.info("Manual scan cycle requested")
    return scanner.run_cycle()


@router.get("/watermark", response_model=WatermarkResponse)
def get_watermark(
    store: PaymentStore = Depends(get_store),
) -> WatermarkResponse:
    """The newest feed message id already processed."""
    return WatermarkResponse(
        name=DEFAULT_WATERMARK,
        value=store.get_watermark(DEFAULT_WATERMARK),
    )
