from ume_messaging.services.listings.listing_repository import ListingRepository

__all__ = ["ListingRepository"]
