"""
Contracts for the services this engine calls but does not own: listings, user
profiles and notification delivery. Production wiring passes adapters over the
listing/user stores; tests pass in-memory fakes.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ListingStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SOLD = "sold"
    EXPIRED = "expired"


class Availability(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"


@dataclass(frozen=True)
class ListingSnapshot:
    listing_id: str
    status: str
    availability: str
    price: int
    seller_id: str
    title: str = ""

    @property
    def purchasable(self) -> bool:
        return self.status == ListingStatus.ACTIVE.value and self.availability == Availability.AVAILABLE.value


@dataclass(frozen=True)
class SaleInfo:
    transaction_id: str
    final_price: int
    currency: str
    sold_at: datetime


@dataclass(frozen=True)
class UserSnapshot:
    user_id: str
    name: str = ""
    email: str | None = None


class ListingService(ABC):
    @abstractmethod
    def get_listing(self, listing_id: str) -> ListingSnapshot | None:
        pass

    @abstractmethod
    def set_availability(self, listing_id: str, availability: Availability | str) -> None:
        pass

    @abstractmethod
    def mark_sold(self, listing_id: str, buyer_id: str, sale: SaleInfo) -> None:
        pass


class UserDirectory(ABC):
    @abstractmethod
    def get_user(self, user_id: str) -> UserSnapshot | None:
        pass

    @abstractmethod
    def increment_sold_items(self, user_id: str) -> None:
        """Seller statistics: one more item sold."""
        pass


class Notifier(ABC):
    """Fire-and-forget. Implementations must not raise."""

    @abstractmethod
    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        pass
