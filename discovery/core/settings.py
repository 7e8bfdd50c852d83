from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore", populate_by_name=True)

    # Paths
    cache_db_path: str = Field(default="discovery/data/discovery_cache.db", alias="CACHE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # ──────────────────────────────────────────────────────────────
    # Google Maps (places + directions)
    # ──────────────────────────────────────────────────────────────

    google_maps_api_key: str = Field(default="", alias="GOOGLE_MAPS_API_KEY")
    places_base_url: str = Field(
        default="https://maps.googleapis.com/maps/api/place",
        alias="PLACES_BASE_URL",
    )
    directions_url: str = Field(
        default="https://maps.googleapis.com/maps/api/directions/json",
        alias="DIRECTIONS_URL",
    )
    provider_timeout_s: float = Field(default=15.0, alias="PROVIDER_TIMEOUT_S")

    # Connectivity probe (HEAD request, short timeout)
    connectivity_probe_url: str = Field(
        default="https://clients3.google.com/generate_204",
        alias="CONNECTIVITY_PROBE_URL",
    )
    connectivity_timeout_s: float = Field(default=3.0, alias="CONNECTIVITY_TIMEOUT_S")
    connectivity_cache_s: float = Field(default=10.0, alias="CONNECTIVITY_CACHE_S")

    # ──────────────────────────────────────────────────────────────
    # Supabase (remote document store)
    # ──────────────────────────────────────────────────────────────

    supa_url: str | None = Field(default=None, alias="SUPA_URL")
    supa_service_role_key: str | None = Field(default=None, alias="SUPA_SERVICE_ROLE_KEY")
    supa_enabled: bool = Field(default=False, alias="SUPA_ENABLED")
    supa_documents_table: str = Field(default="roam_documents", alias="SUPA_DOCUMENTS_TABLE")
    remote_write_batch_size: int = Field(default=400, alias="REMOTE_WRITE_BATCH_SIZE")
    remote_read_batch_size: int = Field(default=10, alias="REMOTE_READ_BATCH_SIZE")

    # ──────────────────────────────────────────────────────────────
    # Quota
    # ──────────────────────────────────────────────────────────────

    quota_daily_max: int = Field(default=20, alias="QUOTA_DAILY_MAX")
    quota_reserved_places: int = Field(default=5, alias="QUOTA_RESERVED_PLACES")
    quota_reserved_directions: int = Field(default=2, alias="QUOTA_RESERVED_DIRECTIONS")

    # ──────────────────────────────────────────────────────────────
    # Places cache
    # ──────────────────────────────────────────────────────────────

    places_search_radius_m: int = Field(default=1000, alias="PLACES_SEARCH_RADIUS_M")
    places_recache_distance_m: float = Field(default=500.0, alias="PLACES_RECACHE_DISTANCE_M")
    places_cache_ttl_s: int = Field(default=60 * 60 * 24 * 3, alias="PLACES_CACHE_TTL_S")  # 3d
    places_max_results: int = Field(default=20, alias="PLACES_MAX_RESULTS")
    places_max_pages: int = Field(default=3, alias="PLACES_MAX_PAGES")
    places_page_delay_s: float = Field(default=2.0, alias="PLACES_PAGE_DELAY_S")
    places_min_furthest_m: float = Field(default=1000.0, alias="PLACES_MIN_FURTHEST_M")
    places_furthest_padding_m: float = Field(default=200.0, alias="PLACES_FURTHEST_PADDING_M")
    places_search_type: str = Field(default="tourist_attraction", alias="PLACES_SEARCH_TYPE")
    places_search_keyword: str = Field(
        default="tourist,attraction,landmark,sightseeing",
        alias="PLACES_SEARCH_KEYWORD",
    )
    places_details_fields: str = Field(
        default=(
            "place_id,name,vicinity,geometry,types,rating,user_ratings_total,price_level,photos,"
            "formatted_address,url,website,formatted_phone_number,opening_hours,reviews,editorial_summary"
        ),
        alias="PLACES_DETAILS_FIELDS",
    )

    details_ttl_s: int = Field(default=60 * 60 * 24 * 7, alias="DETAILS_TTL_S")  # 7d
    details_refresh_after_s: int = Field(default=60 * 60 * 24 * 30, alias="DETAILS_REFRESH_AFTER_S")  # 30d
    details_retention_s: int = Field(default=60 * 60 * 24 * 180, alias="DETAILS_RETENTION_S")  # 180d

    cleanup_interval_s: int = Field(default=60 * 60 * 24, alias="CLEANUP_INTERVAL_S")

    # ──────────────────────────────────────────────────────────────
    # Routes
    # ──────────────────────────────────────────────────────────────

    route_cache_ttl_s: int = Field(default=60 * 60 * 24 * 7, alias="ROUTE_CACHE_TTL_S")  # 7d
    route_walking_threshold_m: float = Field(default=2000.0, alias="ROUTE_WALKING_THRESHOLD_M")
    route_walking_speed_kmh: float = Field(default=5.0, alias="ROUTE_WALKING_SPEED_KMH")
    route_driving_speed_kmh: float = Field(default=40.0, alias="ROUTE_DRIVING_SPEED_KMH")
    route_offline_intermediate_points: int = Field(default=2, alias="ROUTE_OFFLINE_INTERMEDIATE_POINTS")
    route_offline_jitter_deg: float = Field(default=0.0002, alias="ROUTE_OFFLINE_JITTER_DEG")

    # ──────────────────────────────────────────────────────────────
    # Visited places
    # ──────────────────────────────────────────────────────────────

    visited_memo_ttl_s: int = Field(default=60 * 60 * 24 * 7, alias="VISITED_MEMO_TTL_S")  # 7d
    visited_batch_size: int = Field(default=10, alias="VISITED_BATCH_SIZE")
    visited_retry_delay_s: float = Field(default=5.0, alias="VISITED_RETRY_DELAY_S")

    # ──────────────────────────────────────────────────────────────
    # Location / orchestration
    # ──────────────────────────────────────────────────────────────

    refresh_min_interval_s: float = Field(default=120.0, alias="REFRESH_MIN_INTERVAL_S")
    refresh_move_fraction: float = Field(default=0.9, alias="REFRESH_MOVE_FRACTION")


settings = Settings()
