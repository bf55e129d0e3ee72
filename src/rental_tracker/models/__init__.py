from .listing import STATUSES, Listing, ListingStage, Priority, Status

__all__ = ["Listing", "ListingStage", "Priority", "Status", "STATUSES"]
