"""
Listing store (read side of the marketplace listings).
"""
from core.db.listings.listings_store import (
    ORDER_BY,
    count_listings,
    count_term_documents,
    escape_like,
    fetch_listings,
    get_filter_facets,
    get_listing,
    insert_category,
    insert_listing,
    set_listing_status,
    suggest_category_names,
    suggest_titles,
)

__all__ = [
    "ORDER_BY",
    "count_listings",
    "count_term_documents",
    "escape_like",
    "fetch_listings",
    "get_filter_facets",
    "get_listing",
    "insert_category",
    "insert_listing",
    "set_listing_status",
    "suggest_category_names",
    "suggest_titles",
]
