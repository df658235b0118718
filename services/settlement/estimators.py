"""
services/settlement/estimators.py
Strategies for pricing the revenue lost to no-shows.
"""

from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import List

from config.settings import settings
from shared.schemas.entities import Booking

CENTS = Decimal("0.01")


class NoShowLossEstimator(ABC):
    @abstractmethod
    def average_price(self, no_shows: List[Booking]) -> Decimal:
        raise NotImplementedError


class FlatRateEstimator(NoShowLossEstimator):
    """Same flat estimate for every no-show, whatever the seva."""

    def __init__(self, flat_price: Decimal = Decimal("500")):
        self.flat_price = Decimal(flat_price)

    def average_price(self, no_shows: List[Booking]) -> Decimal:
        return self.flat_price


class BookedPriceEstimator(NoShowLossEstimator):
    """Mean of the prices snapshotted on the no-show bookings."""

    def average_price(self, no_shows: List[Booking]) -> Decimal:
        if not no_shows:
            return Decimal("0")
        total = sum((b.service.price for b in no_shows), Decimal("0"))
        return (total / len(no_shows)).quantize(CENTS, rounding=ROUND_HALF_UP)


def estimator_from_settings() -> NoShowLossEstimator:
    if settings.NO_SHOW_ESTIMATOR == "booked_price":
        return BookedPriceEstimator()
    return FlatRateEstimator(Decimal(str(settings.NO_SHOW_FLAT_PRICE)))
