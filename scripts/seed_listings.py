"""
Seed a local database with a few categories, users, listings and one saved
search, so the API and the alert worker have something to work on.

Usage:
  python scripts/seed_listings.py
  DATABASE_URL=sqlite:///demo.db python scripts/seed_listings.py
"""
from __future__ import annotations

import logging
from datetime import timedelta

from dotenv import load_dotenv

from core.clock import utcnow
from core.config import Settings
from core.db import Database, init_db
from core.db.listings import insert_category, insert_listing
from core.db.saved_searches import create_saved_search
from core.db.users import create_user
from core.search import normalize_query

log = logging.getLogger("seed")

CATEGORIES = [("Phones", "phones"), ("Bikes", "bikes"), ("Furniture", "furniture")]

LISTINGS = [
    # title, category slug, price, condition, location, lat, lng, featured
    ("iPhone 13 128GB", "phones", 550, "good", "Ljubljana", 46.0569, 14.5058, True),
    ("iPhone 12 mini", "phones", 400, "fair", "Maribor", 46.5547, 15.6459, False),
    ("Samsung Galaxy S22", "phones", 480, "like_new", "Ljubljana", 46.0511, 14.5051, False),
    ("City bike, 28 inch", "bikes", 120, "good", "Kranj", 46.2389, 14.3556, False),
    ("Road bike carbon frame", "bikes", 900, "like_new", "Ljubljana", 46.0600, 14.5100, True),
    ("Oak dining table", "furniture", 250, "good", "Celje", 46.2397, 15.2677, False),
]


def main() -> None:
    load_dotenv(override=True)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    settings = Settings.from_env()
    db = Database(settings.database_url)
    init_db(db)

    category_ids = {}
    for position, (name, slug) in enumerate(CATEGORIES):
        category_ids[slug] = insert_category(db, name, slug, sort_order=position)

    seller = create_user(db, "seller@example.com", username="seller")
    buyer = create_user(db, "buyer@example.com", username="buyer")

    now = utcnow()
    for i, (title, slug, price, condition, location, lat, lng, featured) in enumerate(LISTINGS):
        insert_listing(
            db,
            title=title,
            description=f"{title} in {condition.replace('_', ' ')} condition, pickup in {location}.",
            price=price,
            condition=condition,
            category_id=category_ids[slug],
            location=location,
            latitude=lat,
            longitude=lng,
            created_at=now - timedelta(hours=len(LISTINGS) - i),
            is_featured=featured,
            favorites_count=i * 3,
            user_id=seller,
        )

    descriptor = normalize_query({"q": "iphone", "max_price": "600"}, settings=settings)
    saved_id = create_saved_search(db, user_id=buyer, name="Cheap iPhones", descriptor=descriptor)

    log.info(
        "Seed complete",
        extra={"listings": len(LISTINGS), "categories": len(CATEGORIES), "saved_search_id": saved_id},
    )


if __name__ == "__main__":
    main()
