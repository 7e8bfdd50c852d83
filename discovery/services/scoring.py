"""
Tourism relevance heuristic for provider search results.

Scores are deterministic: same PlaceSummary in, same float out. Results that
are clearly not for travellers (a car park with no heritage angle) get the
sentinel NOT_TOURISM score and are always dropped.
"""

from __future__ import annotations

import math
from typing import List

from discovery.core.contracts import PlaceSummary

NOT_TOURISM = -1000.0

MIN_SCORE = 25.0
ESCAPE_RATING = 4.5
HIGH_PRIORITY_MIN_RATING = 3.0

# ── Category weights ────────────────────────────────────────────────────

NON_TOURIST_TYPE_PENALTY = -40.0
HIGH_PRIORITY_TYPE_BONUS = 50.0
TOURIST_TYPE_BONUS = 20.0

NON_TOURIST_TYPES = frozenset({
    "parking", "gas_station", "car_repair", "car_wash", "car_dealer", "car_rental",
    "atm", "bank", "pharmacy", "drugstore", "supermarket", "grocery_or_supermarket",
    "convenience_store", "dentist", "doctor", "hospital", "insurance_agency",
    "real_estate_agency", "lawyer", "accounting", "laundry", "storage", "lodging",
    "moving_company", "post_office", "school", "gym", "hair_care", "beauty_salon",
})

HIGH_PRIORITY_TYPES = frozenset({
    "tourist_attraction", "museum", "art_gallery", "zoo", "aquarium",
    "amusement_park", "church", "hindu_temple", "mosque", "synagogue",
})

TOURIST_TYPES = frozenset({
    "park", "library", "city_hall", "stadium", "natural_feature",
    "place_of_worship", "cemetery", "courthouse", "university",
})

# ── Keyword weights (lowercase name + vicinity) ─────────────────────────

TOURIST_KEYWORD_BONUS = 10.0
NON_TOURIST_KEYWORD_PENALTY = -15.0

TOURIST_KEYWORDS = (
    "historic", "history", "heritage", "monument", "memorial", "museum", "gallery",
    "castle", "palace", "cathedral", "abbey", "temple", "tower", "bridge", "landmark",
    "statue", "ruins", "square", "viewpoint", "lookout", "fort", "old town",
)

HERITAGE_KEYWORDS = (
    "historic", "history", "heritage", "monument", "memorial", "castle", "palace",
    "cathedral", "abbey", "ruins", "fort", "ancient",
)

NON_TOURIST_KEYWORDS = (
    "parking", "car park", "garage", "petrol", "gas station", "supermarket",
    "pharmacy", "bank", "atm", "dentist", "clinic", "office", "insurance",
    "real estate", "laundry", "storage", "car wash", "car rental", "hostel",
    "apartment",
)

STRONG_NON_TOURIST_KEYWORDS = (
    "parking", "car park", "garage", "petrol", "gas station", "atm", "car wash",
    "storage", "supermarket", "pharmacy", "bank", "dentist", "laundry",
)

NAME_BONUSES = (
    ("museum", 15.0),
    ("castle", 15.0),
    ("cathedral", 15.0),
    ("monument", 10.0),
    ("park", 8.0),
    ("garden", 8.0),
)

MAX_PHOTO_BONUS = 10.0
PHOTO_BONUS = 2.0


def _text(place: PlaceSummary) -> str:
    return f"{place.name} {place.vicinity}".lower()


def is_definitely_not_tourism(place: PlaceSummary) -> bool:
    types = set(place.types)
    if not types & NON_TOURIST_TYPES:
        return False
    if types & HIGH_PRIORITY_TYPES:
        return False
    text = _text(place)
    if any(k in text for k in HERITAGE_KEYWORDS):
        return False
    return any(k in text for k in STRONG_NON_TOURIST_KEYWORDS)


def calculate_tourism_score(place: PlaceSummary) -> float:
    if is_definitely_not_tourism(place):
        return NOT_TOURISM

    score = 0.0
    for t in place.types:
        if t in NON_TOURIST_TYPES:
            score += NON_TOURIST_TYPE_PENALTY
        elif t in HIGH_PRIORITY_TYPES:
            score += HIGH_PRIORITY_TYPE_BONUS
        elif t in TOURIST_TYPES:
            score += TOURIST_TYPE_BONUS

    if place.rating is not None:
        score += float(place.rating) * 4.0
    if place.user_ratings_total:
        score += math.log10(int(place.user_ratings_total) + 1) * 5.0

    score += min(MAX_PHOTO_BONUS, PHOTO_BONUS * len(place.photos))

    text = _text(place)
    score += TOURIST_KEYWORD_BONUS * sum(1 for k in TOURIST_KEYWORDS if k in text)
    score += NON_TOURIST_KEYWORD_PENALTY * sum(1 for k in NON_TOURIST_KEYWORDS if k in text)

    name = place.name.lower()
    for needle, bonus in NAME_BONUSES:
        if needle in name:
            score += bonus

    return round(score, 4)


def is_tourist_place(place: PlaceSummary, score: float) -> bool:
    if score <= NOT_TOURISM:
        return False
    rating = place.rating
    if set(place.types) & HIGH_PRIORITY_TYPES:
        return rating is None or rating >= HIGH_PRIORITY_MIN_RATING
    return score >= MIN_SCORE or (rating is not None and rating >= ESCAPE_RATING)


def score_and_filter(places: List[PlaceSummary]) -> List[PlaceSummary]:
    """Attach tourism_score to each place and keep the ones worth showing."""
    kept: List[PlaceSummary] = []
    for p in places:
        score = calculate_tourism_score(p)
        if is_tourist_place(p, score):
            kept.append(p.model_copy(update={"tourism_score": score}))
    return kept
