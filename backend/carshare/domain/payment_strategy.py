"""Choose how a reservation's money is captured based on trip length."""

from __future__ import annotations

from dataclasses import dataclass

from carshare.core.config import DEFAULT_PAYMENT_CAPTURE_MAX_DAYS, settings
from carshare.models.payment import PaymentStrategy


@dataclass(frozen=True)
class StrategySelection:
    strategy: PaymentStrategy
    capture_max_days: int
    manual_capture_enabled: bool


def select_payment_strategy(
    days: int,
    *,
    manual_capture_enabled: bool | None = None,
    capture_max_days: int | None = None,
) -> StrategySelection:
    """
    Short trips are authorized now and captured at trip end straight into the
    host's account. Longer trips outlive an authorization hold, so they are
    charged immediately and the host's share is transferred after the trip.
    """
    if manual_capture_enabled is None:
        manual_capture_enabled = settings.enable_destination_manual_capture
    if capture_max_days is None or capture_max_days <= 0:
        capture_max_days = settings.payment_capture_max_days or DEFAULT_PAYMENT_CAPTURE_MAX_DAYS

    if not manual_capture_enabled:
        strategy = PaymentStrategy.PLATFORM_TRANSFER_FALLBACK
    elif days <= capture_max_days:
        strategy = PaymentStrategy.DESTINATION_MANUAL_CAPTURE
    else:
        strategy = PaymentStrategy.PLATFORM_TRANSFER_FALLBACK

    return StrategySelection(
        strategy=strategy,
        capture_max_days=capture_max_days,
        manual_capture_enabled=manual_capture_enabled,
    )
